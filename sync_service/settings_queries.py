"""SQL helpers para sync_settings (clave/valor). No business logic."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import text

INTERVAL_KEY = "sync_interval_seconds"
BATCH_SIZE_KEY = "sync_batch_size"


def get_value(conn, key: str) -> Optional[str]:
    row = conn.execute(
        text("SELECT value FROM sync_settings WHERE key = :key"), {"key": key}
    ).fetchone()
    return row[0] if row else None


def set_value(conn, key: str, value: str, now: str) -> None:
    conn.execute(
        text(
            """
            INSERT INTO sync_settings (key, value, updated_at)
            VALUES (:key, :value, :now)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """
        ),
        {"key": key, "value": value, "now": now},
    )


def seed_value(conn, key: str, value: str, now: str) -> None:
    """Escribe el valor solo si la clave no existe."""
    conn.execute(
        text(
            """
            INSERT INTO sync_settings (key, value, updated_at)
            VALUES (:key, :value, :now)
            ON CONFLICT(key) DO NOTHING
            """
        ),
        {"key": key, "value": value, "now": now},
    )
