"""Almacenamiento local de lecturas del nodo (SQLite vía SQLAlchemy)."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from common.db import Database
from common.protocol import DataPoint
from common.timeutil import reading_timestamp, utc_now_iso

from .ledger import SequenceLedger

logger = logging.getLogger(__name__)

SERVER_ID = "server"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS readings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sequence_id INTEGER NOT NULL UNIQUE,
        node_id TEXT NOT NULL,
        sensor_id TEXT NOT NULL,
        sensor_type TEXT NOT NULL,
        reading_type TEXT NOT NULL,
        value REAL NOT NULL,
        timestamp TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_readings_timestamp ON readings (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS sequence_tracker (
        key TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS server_sync (
        server_id TEXT PRIMARY KEY,
        last_sync_time TEXT,
        last_sequence INTEGER NOT NULL DEFAULT 0,
        last_seen TEXT
    )
    """,
)


def ensure_node_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        for stmt in _SCHEMA:
            conn.execute(text(stmt))


def _row_to_point(row) -> DataPoint:
    return DataPoint(
        sequence_id=row["sequence_id"],
        sensor_id=row["sensor_id"],
        sensor_type=row["sensor_type"],
        reading_type=row["reading_type"],
        value=row["value"],
        timestamp=row["timestamp"],
    )


_SELECT_COLUMNS = "sequence_id, sensor_id, sensor_type, reading_type, value, timestamp"


class ReadingStore:
    """Lecturas locales del nodo.

    Cada lectura recibe su sequence_id del ledger dentro de la MISMA
    transacción en la que se inserta: sin fallos de almacenamiento la
    secuencia no tiene huecos.
    """

    def __init__(self, db: Database, ledger: SequenceLedger, node_id: str):
        self.db = db
        self.ledger = ledger
        self.node_id = node_id

    async def record(
        self,
        sensor_id: str,
        reading_type: str,
        value: float,
        timestamp: Optional[str] = None,
        sensor_type: Optional[str] = None,
    ) -> DataPoint:
        point = DataPoint(
            sensor_id=sensor_id,
            sensor_type=sensor_type or sensor_id,
            reading_type=reading_type,
            value=value,
            timestamp=timestamp or reading_timestamp(),
        )
        return await self.db.run(self._record_sync, point)

    def _record_sync(self, engine: Engine, point: DataPoint) -> DataPoint:
        with engine.begin() as conn:
            seq = self.ledger.allocate(conn)
            conn.execute(
                text(
                    """
                    INSERT INTO readings
                        (sequence_id, node_id, sensor_id, sensor_type, reading_type,
                         value, timestamp, created_at)
                    VALUES
                        (:seq, :node_id, :sensor_id, :sensor_type, :reading_type,
                         :value, :ts, :created_at)
                    """
                ),
                {
                    "seq": seq,
                    "node_id": self.node_id,
                    "sensor_id": point.sensor_id,
                    "sensor_type": point.sensor_type,
                    "reading_type": point.reading_type,
                    "value": point.value,
                    "ts": point.timestamp,
                    "created_at": utc_now_iso(),
                },
            )
        logger.debug("[NODE] Stored reading seq=%d sensor=%s", seq, point.sensor_id)
        return point.model_copy(update={"sequence_id": seq})

    async def read_sequence_range(
        self, start: int, end_exclusive: Optional[int], limit: int
    ) -> list[DataPoint]:
        """Lecturas con start <= sequence_id < end_exclusive, ascendente."""
        return await self.db.run(self._read_sequence_sync, start, end_exclusive, limit)

    @staticmethod
    def _read_sequence_sync(
        engine: Engine, start: int, end_exclusive: Optional[int], limit: int
    ) -> list[DataPoint]:
        sql = f"SELECT {_SELECT_COLUMNS} FROM readings WHERE sequence_id >= :start"
        params: dict = {"start": start, "limit": limit}
        if end_exclusive is not None:
            sql += " AND sequence_id < :end"
            params["end"] = end_exclusive
        sql += " ORDER BY sequence_id ASC LIMIT :limit"
        with engine.connect() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [_row_to_point(r) for r in rows]

    async def read_time_range(self, start_time: str, end_time: str, limit: int) -> list[DataPoint]:
        return await self.db.run(self._read_time_sync, start_time, end_time, limit)

    @staticmethod
    def _read_time_sync(engine: Engine, start_time: str, end_time: str, limit: int) -> list[DataPoint]:
        with engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_SELECT_COLUMNS} FROM readings
                    WHERE timestamp >= :start AND timestamp <= :end
                    ORDER BY sequence_id ASC
                    LIMIT :limit
                    """
                ),
                {"start": start_time, "end": end_time, "limit": limit},
            ).mappings().all()
        return [_row_to_point(r) for r in rows]

    async def record_server_sync(self, last_sequence: int) -> None:
        await self.db.run(self._record_server_sync_sync, last_sequence)

    @staticmethod
    def _record_server_sync_sync(engine: Engine, last_sequence: int) -> None:
        now = utc_now_iso()
        with engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO server_sync (server_id, last_sync_time, last_sequence, last_seen)
                    VALUES (:sid, :now, :seq, :now)
                    ON CONFLICT(server_id) DO UPDATE SET
                        last_sync_time = excluded.last_sync_time,
                        last_sequence = MAX(server_sync.last_sequence, excluded.last_sequence),
                        last_seen = excluded.last_seen
                    """
                ),
                {"sid": SERVER_ID, "now": now, "seq": last_sequence},
            )

    async def get_server_sync(self) -> Optional[dict]:
        return await self.db.run(self._get_server_sync_sync)

    @staticmethod
    def _get_server_sync_sync(engine: Engine) -> Optional[dict]:
        with engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM server_sync WHERE server_id = :sid"), {"sid": SERVER_ID}
            ).mappings().first()
        return dict(row) if row else None
