"""Alembic migration integration: wires Alembic into the app lifecycle."""

from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

from chatdesk.core.database import Base

logger = structlog.get_logger()

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def alembic_cfg(url: str) -> Config:
    """Build an Alembic Config in code (no alembic.ini, cwd-independent)."""
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def _check_db_state(connection) -> tuple[bool, bool, str | None]:
    """Check database state (sync, for use with run_sync).

    Returns (has_alembic_version, has_app_tables, current_revision).
    """
    insp = inspect(connection)
    tables = insp.get_table_names()
    has_alembic = "alembic_version" in tables
    has_app_tables = "profiles" in tables

    current_rev = None
    if has_alembic:
        result = connection.execute(text("SELECT version_num FROM alembic_version"))
        row = result.first()
        current_rev = row[0] if row else None

    return has_alembic, has_app_tables, current_rev


def _stamp_head(connection) -> None:
    """Stamp the database at head revision without running migrations."""
    cfg = alembic_cfg(str(connection.engine.url))
    cfg.attributes["connection"] = connection
    command.stamp(cfg, "head")


def _upgrade_head(connection) -> None:
    """Run alembic upgrade head on the given connection."""
    cfg = alembic_cfg(str(connection.engine.url))
    cfg.attributes["connection"] = connection
    command.upgrade(cfg, "head")


async def ensure_db_migrated(engine: AsyncEngine) -> None:
    """Ensure database schema is up to date via Alembic.

    Handles three scenarios:
    1. Fresh DB (no tables, no alembic_version): create_all + stamp head
    2. Existing DB without tracking (tables exist, no alembic_version): stamp head
    3. Alembic-tracked DB (alembic_version exists): upgrade head
    """
    async with engine.begin() as conn:
        has_alembic, has_app_tables, current_rev = await conn.run_sync(_check_db_state)

    if not has_app_tables and not has_alembic:
        logger.info("migrations_fresh_db", action="create_all_and_stamp")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.run_sync(_stamp_head)
    elif has_app_tables and not has_alembic:
        logger.info("migrations_existing_db", action="stamp_head")
        async with engine.begin() as conn:
            await conn.run_sync(_stamp_head)
    else:
        logger.info("migrations_tracked_db", current_rev=current_rev, action="upgrade_head")
        async with engine.begin() as conn:
            await conn.run_sync(_upgrade_head)
