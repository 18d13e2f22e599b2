from __future__ import annotations

import asyncio

from cero.persistence.db import SessionLocal
from cero.services.auth.sessions import sweep_sessions


async def sweep() -> None:
    async with SessionLocal() as session:
        deleted = await sweep_sessions(session)
        print(f"swept_sessions={deleted}")


if __name__ == "__main__":
    asyncio.run(sweep())
