"""Central database location and schema loading."""

import logging
from pathlib import Path

import aiosqlite

from cloudcrowd.config import load_database_settings
from cloudcrowd.errors import ConfigNotFound
from .migrations import run_migrations

logger = logging.getLogger("cloudcrowd.database")

SUPPORTED_ADAPTERS = {"sqlite", "sqlite3"}


def database_path(database_config: Path) -> Path:
    """Read database.yml and return the sqlite file it points at."""
    settings = load_database_settings(database_config)
    adapter = str(settings.get("adapter", "sqlite3")).strip().lower()
    if adapter not in SUPPORTED_ADAPTERS:
        raise ConfigNotFound(f"{database_config}: unsupported database adapter {adapter!r}")
    raw = str(settings.get("database") or "").strip()
    if not raw:
        raise ConfigNotFound(f"{database_config} must name a `database` file")
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = database_config.parent / path
    return path


async def load_schema(db_path: Path) -> list[str]:
    """Create the central tables, applying only migrations not yet recorded."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Loading schema into %s", db_path)
    async with aiosqlite.connect(db_path) as db:
        return await run_migrations(db)


async def get_db(db_path: Path):
    """Yield a connection with row access by column name."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        yield db
