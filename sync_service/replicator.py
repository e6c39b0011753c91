"""StorageReplicator: aplicación idempotente de lotes remotos.

Un lote = una transacción. La unicidad (node_id, sensor_id, timestamp,
reading_type) hace que un registro repetido se salte y se cuente como
duplicado. Cualquier otro error revierte el lote completo y se propaga como
StorageWriteError: la petición queda pending para un reintento.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from common.db import Database
from common.errors import StorageWriteError
from common.protocol import DataPoint, HistoryResponseMessage
from common.timeutil import utc_now_iso

from . import data_queries, node_queries, request_queries

logger = logging.getLogger(__name__)


class _RequestFinalized(Exception):
    """La petición dejó de admitir datos entre la lectura y el commit."""


@dataclass
class ApplyResult:
    stored: int = 0
    duplicates: int = 0
    completed: bool = False
    late: bool = False


class StorageReplicator:
    def __init__(self, db: Database):
        self.db = db
        self._stats = {"batches": 0, "stored": 0, "duplicates": 0, "failed_batches": 0}

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    async def apply(self, node_id: str, points: list[DataPoint]) -> int:
        """Aplica un lote suelto (telemetría en vivo).

        Returns:
            Número de registros realmente nuevos.
        """
        result = await self.db.run(self._apply_sync, node_id, points)
        return result.stored

    async def apply_response(
        self,
        node_id: str,
        response: HistoryResponseMessage,
        complete_request: bool,
    ) -> ApplyResult:
        """Aplica una respuesta de historial y avanza el progreso en el MISMO commit.

        Con complete_request=True la petición pasa a completed (CAS sobre
        pending). Con False (respuesta tardía a un timeout) solo se anotan
        los registros recuperados; el estado terminal no cambia. Si la
        petición ya no admite datos (completed o cancelled) el lote se
        revierte y el resultado queda vacío.
        """
        return await self.db.run(
            self._apply_response_sync, node_id, response, complete_request
        )

    def _apply_sync(self, engine: Engine, node_id: str, points: list[DataPoint]) -> ApplyResult:
        try:
            with engine.begin() as conn:
                result = self._insert_points(conn, node_id, points)
                node_queries.touch_last_seen(conn, node_id, utc_now_iso())
        except SQLAlchemyError as e:
            self._fail(node_id, e)
        self._record(result)
        return result

    def _apply_response_sync(
        self,
        engine: Engine,
        node_id: str,
        response: HistoryResponseMessage,
        complete_request: bool,
    ) -> ApplyResult:
        now = utc_now_iso()
        try:
            with engine.begin() as conn:
                result = self._insert_points(conn, node_id, response.data_points)

                if response.is_sequence_based and response.end_sequence is not None:
                    node_queries.advance_sequence_info(
                        conn,
                        node_id,
                        response.end_sequence,
                        response.max_sequence or 0,
                        now,
                    )
                node_queries.touch_last_sync(conn, node_id, now)

                if complete_request:
                    result.completed = request_queries.mark_completed(
                        conn, response.request_id, result.stored, now
                    )
                if not result.completed:
                    result.late = request_queries.record_late_count(
                        conn, response.request_id, result.stored
                    )
                if not (result.completed or result.late):
                    # Otra entrega ganó la transición (completed/cancelled)
                    raise _RequestFinalized(response.request_id)
        except _RequestFinalized:
            logger.debug("[REPLICATOR] Request %s already finalized, batch discarded", response.request_id)
            return ApplyResult()
        except SQLAlchemyError as e:
            self._fail(node_id, e)
        self._record(result)
        return result

    @staticmethod
    def _insert_points(conn: Connection, node_id: str, points: Iterable[DataPoint]) -> ApplyResult:
        result = ApplyResult()
        received_at = utc_now_iso()
        for point in points:
            if data_queries.insert_point(conn, node_id, point, received_at):
                result.stored += 1
            else:
                result.duplicates += 1
        return result

    def _record(self, result: ApplyResult) -> None:
        self._stats["batches"] += 1
        self._stats["stored"] += result.stored
        self._stats["duplicates"] += result.duplicates
        if result.duplicates:
            logger.debug("[REPLICATOR] Skipped %d duplicate records", result.duplicates)

    def _fail(self, node_id: str, error: SQLAlchemyError) -> None:
        self._stats["failed_batches"] += 1
        logger.exception("[REPLICATOR] Batch for %s rolled back", node_id)
        raise StorageWriteError(f"batch for {node_id} rolled back: {error}") from error
