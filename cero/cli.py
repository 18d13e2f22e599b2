from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import sys


logger = logging.getLogger("cero.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cero",
        description="Serve the cero account, billing and reporting web application.",
    )
    parser.add_argument("config_file", nargs="?", default=None, help="KEY=VALUE configuration file")
    parser.add_argument("secrets_file", nargs="?", default=None, help="KEY=VALUE secrets file")
    parser.add_argument(
        "schema_file",
        nargs="?",
        default=None,
        help="SQL schema applied at startup instead of the built-in table definitions",
    )
    return parser


async def _prepare(schema_file: str | None) -> None:
    # Imported here so the settings files are in place before the engine is built.
    from cero.core.config import get_settings
    from cero.persistence.db import SessionLocal, engine
    from cero.persistence.schema import apply_schema_file, create_schema
    from cero.services.accounts import ensure_bootstrap_admin
    from cero.services.auth.sessions import sweep_sessions

    settings = get_settings()
    try:
        if schema_file:
            await apply_schema_file(engine, schema_file)
        else:
            await create_schema(engine)

        async with SessionLocal() as session:
            if settings.session_sweep_on_startup:
                await sweep_sessions(session)
            if settings.admin_email and settings.admin_password_hash is not None:
                admin = await ensure_bootstrap_admin(
                    session,
                    email=settings.admin_email,
                    password_hash=settings.admin_password_hash.get_secret_value(),
                )
                if admin is not None:
                    logger.info("bootstrap_admin_created user_id=%s", admin.id)
    finally:
        # The server runs on a new event loop; pooled connections from this one cannot follow.
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    for label, path in (
        ("config", args.config_file),
        ("secrets", args.secrets_file),
        ("schema", args.schema_file),
    ):
        if path and not Path(path).is_file():
            print(f"cero: {label} file not found: {path}", file=sys.stderr)
            return 1

    from cero.core.config import configure_settings_files, get_settings
    from cero.core.logging import configure_logging

    configure_settings_files(args.config_file, args.secrets_file)
    configure_logging()

    try:
        import uvicorn

        asyncio.run(_prepare(args.schema_file))
        from cero.apps.api.main import app

        settings = get_settings()
        logger.info("server_starting host=%s port=%s", settings.host, settings.port)
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    except Exception as exc:  # noqa: BLE001 - any startup failure ends the process with status 1
        logger.error("startup_failed error=%s", exc, exc_info=exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
