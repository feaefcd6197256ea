"""Database migrations for the central job tables."""

import logging

import aiosqlite

logger = logging.getLogger("cloudcrowd.migrations")

MIGRATIONS: list[tuple[str, str]] = [
    (
        "20260301_create_jobs",
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            status INTEGER NOT NULL,
            inputs TEXT NOT NULL,
            action TEXT NOT NULL,
            options TEXT NOT NULL,
            outputs TEXT,
            time REAL,
            callback_url TEXT,
            email TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """,
    ),
    (
        "20260301_create_work_units",
        """
        CREATE TABLE IF NOT EXISTS work_units (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            status INTEGER NOT NULL,
            job_id INTEGER NOT NULL,
            input TEXT NOT NULL,
            action TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            worker_pid INTEGER,
            reservation INTEGER,
            time REAL,
            output TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(job_id) REFERENCES jobs(id)
        )
        """,
    ),
    (
        "20260301_create_jobs_status_index",
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)
        """,
    ),
    (
        "20260301_create_work_units_job_index",
        """
        CREATE INDEX IF NOT EXISTS idx_work_units_job_id ON work_units(job_id)
        """,
    ),
    (
        "20260301_create_work_units_worker_index",
        """
        CREATE INDEX IF NOT EXISTS idx_work_units_worker ON work_units(worker_pid, status, action)
        """,
    ),
]


async def run_migrations(db: aiosqlite.Connection) -> list[str]:
    """Apply one-time database migrations in order; returns the ids applied now."""
    logger.info("Running central DB migrations...")
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id TEXT PRIMARY KEY,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    async with db.execute("SELECT id FROM schema_migrations") as cursor:
        rows = await cursor.fetchall()
    applied = {row[0] for row in rows}

    newly_applied: list[str] = []
    for migration_id, sql in MIGRATIONS:
        if migration_id in applied:
            logger.debug("Migration already applied: %s", migration_id)
            continue
        logger.info("Applying migration: %s", migration_id)
        await db.execute(sql)
        await db.execute(
            "INSERT INTO schema_migrations (id) VALUES (?)",
            (migration_id,),
        )
        newly_applied.append(migration_id)

    await db.commit()
    logger.info("Central DB migrations complete.")
    return newly_applied
