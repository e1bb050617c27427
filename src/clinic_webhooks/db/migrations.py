"""Startup SQL migrations (``migrations/*.sql``, applied in lexicographic order)."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_SCHEMA_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version text PRIMARY KEY,
    checksum text NOT NULL,
    applied_at timestamptz NOT NULL DEFAULT now()
);
"""


def load_migrations(directory: Path) -> dict[str, Path]:
    migrations: dict[str, Path] = {}
    for path in sorted(directory.glob("*.sql")):
        if path.stem in migrations:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        migrations[path.stem] = path
    return migrations


async def _connect(database_url: str, *, retries: int = 5, delay: float = 2.0) -> asyncpg.Connection | None:
    for attempt in range(1, retries + 1):
        try:
            return await asyncpg.connect(database_url)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning(
                "migrations db connect failed", attempt=attempt, retries=retries, error=str(exc)
            )
            if attempt < retries:
                await asyncio.sleep(delay)
    return None


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, Path]) -> int:
    """Apply pending migrations; returns how many were applied.

    An already-applied migration whose file changed is an error.
    """
    await conn.execute(_SCHEMA_TABLE_SQL)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}

    count = 0
    for version, path in migrations.items():
        sql = path.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: {applied[version]} (db) != {checksum} (file)"
                )
            continue
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                checksum,
            )
        logger.info("migration applied", version=version)
        count += 1
    return count


def create_migration_runner(
    database_url: Callable[[], str],
    possible_paths: Iterable[Path],
) -> Callable[[web.Application], Awaitable[None]]:
    """Build an ``on_startup`` hook that applies pending migrations."""
    paths = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        directory = next((p for p in paths if p.exists()), None)
        if directory is None:
            logger.warning("migrations directory not found", tried=[str(p) for p in paths])
            return
        migrations = load_migrations(directory)
        if not migrations:
            return

        conn = await _connect(database_url())
        if conn is None:
            logger.error("migrations skipped", reason="database unreachable")
            return
        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("migrations complete", applied=applied, known=len(migrations))

    return apply_migrations_on_startup
