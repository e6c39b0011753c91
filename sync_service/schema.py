"""Tablas del servidor (SQLite, CREATE IF NOT EXISTS idempotente)."""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sensor_data (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        node_id TEXT NOT NULL,
        sensor_id TEXT NOT NULL,
        sensor_type TEXT NOT NULL,
        reading_type TEXT NOT NULL,
        value REAL NOT NULL,
        timestamp TEXT NOT NULL,
        sequence_id INTEGER,
        received_at TEXT NOT NULL,
        UNIQUE (node_id, sensor_id, timestamp, reading_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_sensor_data_node_seq ON sensor_data (node_id, sequence_id)",
    "CREATE INDEX IF NOT EXISTS ix_sensor_data_timestamp ON sensor_data (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS node_sequence_info (
        node_id TEXT PRIMARY KEY,
        last_sequence INTEGER NOT NULL DEFAULT 0,
        max_sequence INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS node_sync_status (
        node_id TEXT PRIMARY KEY,
        sync_status TEXT NOT NULL,
        last_seen_timestamp TEXT,
        last_sync_timestamp TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS history_requests (
        request_id TEXT PRIMARY KEY,
        node_id TEXT NOT NULL,
        start_sequence INTEGER,
        end_sequence INTEGER,
        start_time TEXT,
        end_time TEXT,
        status TEXT NOT NULL,
        request_time TEXT NOT NULL,
        complete_time TEXT,
        record_count INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_history_requests_status ON history_requests (status, node_id)",
    "CREATE INDEX IF NOT EXISTS ix_history_requests_time ON history_requests (request_time)",
    """
    CREATE TABLE IF NOT EXISTS sync_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)


def ensure_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        for stmt in _SCHEMA:
            conn.execute(text(stmt))
    logger.info("[DB] Server schema ready")
