"""Applies pending sql/migrations/*.sql files at startup.

Applied versions and their checksums are tracked in
maitre.schema_migrations. A migration that changed on disk after being
applied is reported, never re-run.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "migrations"

_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS maitre.schema_migrations (
    version    VARCHAR(20) PRIMARY KEY,
    name       VARCHAR(255) NOT NULL,
    checksum   VARCHAR(64) NOT NULL,
    applied_at TIMESTAMPTZ DEFAULT now()
);
"""


def discover_migrations(directory: Path = _MIGRATIONS_DIR) -> list[Path]:
    """Migration files ordered by their numeric prefix (001_checkpoints.sql, ...)."""
    if not directory.is_dir():
        logger.debug("No migrations directory at %s", directory)
        return []
    return sorted(directory.glob("*.sql"))


def migration_version(path: Path) -> str:
    return path.stem.split("_", 1)[0]


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode()).hexdigest()


async def run_migrations(engine: AsyncEngine, directory: Path = _MIGRATIONS_DIR) -> list[str]:
    """Apply pending migrations in one transaction; returns the names applied."""
    if not directory.is_dir():
        logger.warning("Migrations directory %s not found; checkpoint tables may be missing", directory)
        return []
    files = discover_migrations(directory)
    if not files:
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        await conn.execute(text("CREATE SCHEMA IF NOT EXISTS maitre"))
        await conn.execute(text(_TRACKING_TABLE))
        rows = await conn.execute(text("SELECT version, checksum FROM maitre.schema_migrations"))
        known = {row[0]: row[1] for row in rows}

        for path in files:
            version = migration_version(path)
            sql = path.read_text(encoding="utf-8")
            digest = checksum(sql)
            if version in known:
                if known[version] != digest:
                    logger.warning("Migration %s changed after it was applied; not re-running", path.name)
                continue

            logger.info("Applying migration %s", path.name)
            await conn.execute(text(sql))
            await conn.execute(
                text(
                    "INSERT INTO maitre.schema_migrations (version, name, checksum) "
                    "VALUES (:version, :name, :checksum)"
                ),
                {"version": version, "name": path.stem, "checksum": digest},
            )
            applied.append(path.stem)

    if applied:
        logger.info("Migrations applied: %s", applied)
    return applied
