"""SQLite database connection management and schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS clusters (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    organization_id TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS policies (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    policy_type TEXT NOT NULL,
    content TEXT NOT NULL,
    cluster_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    deployed_at REAL,
    created_at REAL NOT NULL,
    FOREIGN KEY (cluster_id) REFERENCES clusters(id)
);

CREATE TABLE IF NOT EXISTS flow_records (
    id TEXT PRIMARY KEY,
    cluster_id TEXT NOT NULL,
    src_namespace TEXT NOT NULL DEFAULT '',
    src_pod_name TEXT,
    src_labels TEXT NOT NULL DEFAULT '{}',
    src_ip TEXT,
    dst_namespace TEXT NOT NULL DEFAULT '',
    dst_pod_name TEXT,
    dst_labels TEXT NOT NULL DEFAULT '{}',
    dst_ip TEXT,
    dst_dns_name TEXT,
    dst_port INTEGER NOT NULL DEFAULT 0,
    protocol TEXT NOT NULL DEFAULT 'TCP',
    verdict TEXT,
    flow_count INTEGER NOT NULL DEFAULT 1,
    timestamp REAL,
    FOREIGN KEY (cluster_id) REFERENCES clusters(id)
);

CREATE TABLE IF NOT EXISTS process_summaries (
    id TEXT PRIMARY KEY,
    cluster_id TEXT NOT NULL,
    namespace TEXT NOT NULL DEFAULT '',
    pod_name TEXT NOT NULL DEFAULT '',
    binary TEXT NOT NULL,
    exec_count INTEGER NOT NULL DEFAULT 0,
    syscall_counts TEXT NOT NULL DEFAULT '{}',
    window_start REAL,
    window_end REAL,
    FOREIGN KEY (cluster_id) REFERENCES clusters(id)
);

CREATE TABLE IF NOT EXISTS hourly_summaries (
    cluster_id TEXT NOT NULL,
    hour REAL NOT NULL,
    allowed_count INTEGER NOT NULL DEFAULT 0,
    blocked_count INTEGER NOT NULL DEFAULT 0,
    no_policy_count INTEGER NOT NULL DEFAULT 0,
    coverage_gaps TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (cluster_id, hour),
    FOREIGN KEY (cluster_id) REFERENCES clusters(id)
);

CREATE TABLE IF NOT EXISTS policy_matches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cluster_id TEXT NOT NULL,
    policy_name TEXT NOT NULL,
    timestamp REAL NOT NULL,
    FOREIGN KEY (cluster_id) REFERENCES clusters(id)
);

CREATE TABLE IF NOT EXISTS simulations (
    id TEXT PRIMARY KEY,
    policy_id TEXT NOT NULL DEFAULT '',
    policy_name TEXT NOT NULL DEFAULT '',
    cluster_id TEXT NOT NULL,
    status TEXT NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    error TEXT,
    result TEXT,
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL
);

CREATE INDEX IF NOT EXISTS idx_flows_cluster_time
    ON flow_records(cluster_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_processes_cluster
    ON process_summaries(cluster_id);
CREATE INDEX IF NOT EXISTS idx_policies_cluster
    ON policies(cluster_id);
CREATE INDEX IF NOT EXISTS idx_matches_cluster_time
    ON policy_matches(cluster_id, timestamp);
"""


async def get_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open (or create) the database and run migrations."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")

    try:
        await _migrate(db)
    except Exception:
        await db.close()
        raise
    return db


async def _migrate(db: aiosqlite.Connection) -> None:
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )
    row = await cursor.fetchone()

    if row is None:
        await db.executescript(SCHEMA_SQL)
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await db.commit()
        logger.info("Database initialized at schema version %d", SCHEMA_VERSION)
        return

    cursor = await db.execute("SELECT version FROM schema_version")
    row = await cursor.fetchone()
    current = row[0] if row else 0

    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than supported "
            f"version {SCHEMA_VERSION}"
        )
    if current < SCHEMA_VERSION:
        logger.info("Migrating database from version %d to %d", current, SCHEMA_VERSION)
        await db.executescript(SCHEMA_SQL)
        await db.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
        await db.commit()
