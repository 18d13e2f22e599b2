from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine

from cero.domain.models import Base


logger = logging.getLogger(__name__)


def _strip_comment(line: str) -> str:
    # Drop "--" comments that sit outside string literals.
    in_literal = False
    for index, char in enumerate(line):
        if char == "'":
            in_literal = not in_literal
        elif char == "-" and not in_literal and line[index : index + 2] == "--":
            return line[:index]
    return line


def split_sql_script(script: str) -> list[str]:
    """Split a SQL script into statements.

    Statements end at a semicolon closing a line. Trigger bodies contain their
    own semicolons, so a ``CREATE TRIGGER`` statement runs until ``END;``.
    """
    statements: list[str] = []
    buffer: list[str] = []
    in_trigger = False
    for raw_line in script.splitlines():
        line = _strip_comment(raw_line).rstrip()
        if not line.strip():
            continue
        buffer.append(line)
        if not in_trigger and " ".join(buffer).upper().lstrip().startswith(("CREATE TRIGGER", "CREATE TEMP TRIGGER")):
            in_trigger = True
        if not line.endswith(";"):
            continue
        if in_trigger and not line.strip().upper().endswith("END;"):
            continue
        statement = "\n".join(buffer).strip()
        statements.append(statement[:-1].rstrip() if statement.endswith(";") else statement)
        buffer = []
        in_trigger = False
    trailing = "\n".join(buffer).strip()
    if trailing:
        statements.append(trailing)
    return statements


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("schema_ready source=metadata")


async def apply_schema_file(engine: AsyncEngine, path: str | Path) -> int:
    # The whole file runs in one transaction; a failing statement leaves the store untouched.
    statements = split_sql_script(Path(path).read_text(encoding="utf-8"))
    async with engine.begin() as conn:
        if engine.dialect.name == "sqlite":
            # pysqlite only opens transactions implicitly for DML; DDL needs an explicit BEGIN.
            await conn.exec_driver_sql("BEGIN")
        for statement in statements:
            await conn.exec_driver_sql(statement)
    logger.info("schema_ready source=%s statements=%s", path, len(statements))
    return len(statements)
