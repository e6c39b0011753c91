"""Lado servidor del protocolo de historial.

Ciclo de vida de una petición:
    pending → completed   (respuesta correlacionada y aplicada)
    pending → timeout     (2 min sin respuesta, o GC de pendientes viejas)
    pending → cancelled   (acción explícita del operador)

La fila se inserta ANTES de publicar. Las respuestas se correlacionan por
requestId; las desconocidas o ya completadas se ignoran (el transporte es
at-least-once).

Respuestas tardías: si la petición ya está en timeout, los datos se aplican
igualmente y el progreso avanza (recuperación de datos), pero el estado
terminal sigue siendo timeout. Si está cancelled, se descartan.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Optional, Protocol, Union

from pydantic import ValidationError
from sqlalchemy.engine import Engine

from common import topics
from common.db import Database
from common.errors import ChecksumMismatch, ProtocolError, StorageWriteError
from common.mqtt import PublishOutcome
from common.protocol import (
    HistoryRequestMessage,
    HistoryResponseMessage,
    decode_json,
    new_request_id,
    parse_response,
    verify_checksum,
)
from common.timeutil import utc_now_iso

from . import request_queries
from .config import ChecksumPolicy, SyncConfig
from .replicator import StorageReplicator
from .request_queries import RequestStatus

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, topic: str, message: Any, qos: int = 1, retain: bool = False) -> Awaitable[PublishOutcome]:
        ...


class ResponseDisposition(str, Enum):
    COMPLETED = "completed"
    LATE_APPLIED = "late_applied"
    IGNORED_UNKNOWN = "ignored_unknown"
    IGNORED_DUPLICATE = "ignored_duplicate"
    DISCARDED_CANCELLED = "discarded_cancelled"
    CHECKSUM_REJECTED = "checksum_rejected"
    STORAGE_ERROR = "storage_error"
    INVALID = "invalid"


@dataclass(frozen=True)
class ResponseOutcome:
    disposition: ResponseDisposition
    stored: int = 0
    request_id: Optional[str] = None


@dataclass(frozen=True)
class IssuedRequest:
    request_id: str
    sent: bool
    reason: Optional[str] = None


class HistoryRequestManager:
    def __init__(
        self,
        db: Database,
        replicator: StorageReplicator,
        publisher: Publisher,
        config: SyncConfig,
    ):
        self.db = db
        self.replicator = replicator
        self.publisher = publisher
        self.config = config

        self._timeouts: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._stats = {
            "issued": 0,
            "publish_failed": 0,
            "completed": 0,
            "late_applied": 0,
            "ignored": 0,
            "checksum_mismatch": 0,
            "storage_errors": 0,
            "timeouts": 0,
        }

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Peticiones
    # ------------------------------------------------------------------

    async def request_history(
        self,
        node_id: str,
        start_sequence: Optional[int] = None,
        end_sequence: Optional[int] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
    ) -> IssuedRequest:
        """Registra la petición como pending y la publica al nodo.

        Raises:
            ProtocolError: rango inválido.
        """
        request_id = new_request_id()
        try:
            message = HistoryRequestMessage(
                request_id=request_id,
                start_sequence=start_sequence,
                end_sequence=end_sequence,
                start_time=start_time,
                end_time=end_time,
            )
        except ValidationError as e:
            raise ProtocolError(f"Invalid history request: {e.errors()[0].get('msg')}") from e

        await self.db.run(self._insert_sync, node_id, message)
        self._stats["issued"] += 1

        outcome = await self.publisher.publish(topics.history_request(node_id), message, qos=1)
        self._schedule_timeout(request_id)

        if not outcome.sent:
            # Sigue pending: el timeout libera el hueco y el scheduler reintenta.
            self._stats["publish_failed"] += 1
            logger.warning(
                "[HISTORY] Request %s for %s not published: %s",
                request_id,
                node_id,
                outcome.reason,
            )
        else:
            logger.info(
                "[HISTORY] Requested %s from %s range=[%s, %s) time=[%s, %s]",
                request_id,
                node_id,
                start_sequence,
                end_sequence,
                start_time,
                end_time,
            )
        return IssuedRequest(request_id, outcome.sent, outcome.reason)

    @staticmethod
    def _insert_sync(engine: Engine, node_id: str, message: HistoryRequestMessage) -> None:
        with engine.begin() as conn:
            request_queries.insert_request(
                conn,
                request_id=message.request_id,
                node_id=node_id,
                request_time=utc_now_iso(),
                start_sequence=message.start_sequence,
                end_sequence=message.end_sequence,
                start_time=message.start_time,
                end_time=message.end_time,
            )

    # ------------------------------------------------------------------
    # Respuestas
    # ------------------------------------------------------------------

    async def handle_response(
        self, node_id: str, payload: Union[bytes, str, dict]
    ) -> ResponseOutcome:
        try:
            response = parse_response(payload)
        except ProtocolError as e:
            logger.warning("[HISTORY] Invalid response from %s: %s", node_id, e)
            return ResponseOutcome(ResponseDisposition.INVALID)

        request_id = response.request_id
        row = await self.db.run(_get_request_sync, request_id)

        if row is None or row["node_id"] != node_id:
            self._stats["ignored"] += 1
            logger.info("[HISTORY] Ignoring response for unknown request %s", request_id)
            return ResponseOutcome(ResponseDisposition.IGNORED_UNKNOWN, request_id=request_id)

        status = RequestStatus(row["status"])
        if status is RequestStatus.COMPLETED:
            self._stats["ignored"] += 1
            logger.debug("[HISTORY] Duplicate response for completed %s", request_id)
            return ResponseOutcome(ResponseDisposition.IGNORED_DUPLICATE, request_id=request_id)
        if status is RequestStatus.CANCELLED:
            self._stats["ignored"] += 1
            logger.info("[HISTORY] Discarding response for cancelled %s", request_id)
            return ResponseOutcome(ResponseDisposition.DISCARDED_CANCELLED, request_id=request_id)

        try:
            self._check_integrity(response)
        except ChecksumMismatch as e:
            logger.error("[HISTORY] %s; batch rejected", e)
            return ResponseOutcome(ResponseDisposition.CHECKSUM_REJECTED, request_id=request_id)

        complete = status is RequestStatus.PENDING
        try:
            result = await self.replicator.apply_response(node_id, response, complete_request=complete)
        except StorageWriteError as e:
            self._stats["storage_errors"] += 1
            logger.error("[HISTORY] Response %s left pending: %s", request_id, e)
            return ResponseOutcome(ResponseDisposition.STORAGE_ERROR, request_id=request_id)

        if result.completed:
            self._cancel_timeout(request_id)
            self._stats["completed"] += 1
            logger.info(
                "[HISTORY] Completed %s from %s stored=%d duplicates=%d end=%s max=%s",
                request_id,
                node_id,
                result.stored,
                result.duplicates,
                response.end_sequence,
                response.max_sequence,
            )
            return ResponseOutcome(ResponseDisposition.COMPLETED, result.stored, request_id)

        if result.late:
            self._stats["late_applied"] += 1
            logger.warning(
                "[HISTORY] Late response for timed-out %s applied stored=%d",
                request_id,
                result.stored,
            )
            return ResponseOutcome(ResponseDisposition.LATE_APPLIED, result.stored, request_id)

        # Otra entrega finalizó la petición entre la lectura y el commit
        self._stats["ignored"] += 1
        logger.debug("[HISTORY] Response %s lost the race to finalize, discarded", request_id)
        return ResponseOutcome(ResponseDisposition.IGNORED_DUPLICATE, request_id=request_id)

    def _check_integrity(self, response: HistoryResponseMessage) -> None:
        expected = verify_checksum(response)
        if expected is None:
            return
        self._stats["checksum_mismatch"] += 1
        error = ChecksumMismatch(response.request_id, expected, response.checksum or "")
        if self.config.checksum_policy is ChecksumPolicy.REJECT:
            raise error
        logger.error("[HISTORY] %s; storing anyway", error)

    async def handle_error(self, node_id: str, payload: Union[bytes, str, dict]) -> None:
        """Error reportado por el nodo: la petición sigue pending hasta su timeout."""
        try:
            body = payload if isinstance(payload, dict) else decode_json(payload)
        except ProtocolError as e:
            logger.warning("[HISTORY] Invalid error report from %s: %s", node_id, e)
            return
        logger.warning(
            "[HISTORY] Node %s failed request %s: %s (%s)",
            node_id,
            body.get("requestId"),
            body.get("message"),
            body.get("error"),
        )

    # ------------------------------------------------------------------
    # Timeouts y cancelación
    # ------------------------------------------------------------------

    async def expire(self, request_id: str) -> bool:
        """pending → timeout (CAS). False si otra transición ganó."""
        self._timeouts.pop(request_id, None)
        changed = await self.db.run(_mark_timeout_sync, request_id)
        if changed:
            self._stats["timeouts"] += 1
            logger.warning("[HISTORY] Request %s timed out", request_id)
        return changed

    async def cancel_all_pending(self) -> int:
        count = await self.db.run(_cancel_all_sync)
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        logger.info("[HISTORY] Cancelled %d pending requests", count)
        return count

    def close(self) -> None:
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        for task in list(self._tasks):
            task.cancel()

    def _schedule_timeout(self, request_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._timeouts[request_id] = loop.call_later(
            self.config.request_timeout_seconds, self._on_timeout, request_id
        )

    def _cancel_timeout(self, request_id: str) -> None:
        handle = self._timeouts.pop(request_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timeout(self, request_id: str) -> None:
        task = asyncio.ensure_future(self.expire(request_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[HISTORY] Timeout task failed", exc_info=task.exception())


def _get_request_sync(engine: Engine, request_id: str) -> Optional[dict]:
    with engine.connect() as conn:
        return request_queries.get_request(conn, request_id)


def _mark_timeout_sync(engine: Engine, request_id: str) -> bool:
    with engine.begin() as conn:
        return request_queries.mark_timeout(conn, request_id, utc_now_iso())


def _cancel_all_sync(engine: Engine) -> int:
    with engine.begin() as conn:
        return request_queries.cancel_all_pending(conn, utc_now_iso())
