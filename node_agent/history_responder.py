"""Lado nodo del protocolo de historial: responde peticiones del servidor."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from common import topics
from common.errors import ProtocolError
from common.mqtt import PublishOutcome
from common.protocol import (
    HistoryRequestMessage,
    HistoryResponseMessage,
    compute_checksum,
    decode_json,
    parse_request,
)
from common.timeutil import utc_now_iso

from .ledger import SequenceLedger
from .storage import ReadingStore

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, topic: str, message: Any, qos: int = 1, retain: bool = False) -> Awaitable[PublishOutcome]:
        ...


class HistoryResponder:
    def __init__(
        self,
        node_id: str,
        store: ReadingStore,
        ledger: SequenceLedger,
        publisher: Publisher,
        max_batch: int = 1000,
    ):
        self.node_id = node_id
        self.store = store
        self.ledger = ledger
        self.publisher = publisher
        self.max_batch = max_batch

        self._stats = {"requests": 0, "responses_sent": 0, "publish_failed": 0, "errors": 0}

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    async def handle_message(self, topic: str, payload: bytes) -> None:
        """Entrada desde el ConnectionManager."""
        if topic != topics.history_request(self.node_id):
            logger.debug("[HISTORY] Ignoring control message on %s", topic)
            return

        self._stats["requests"] += 1
        try:
            request = parse_request(payload)
        except ProtocolError as e:
            logger.warning("[HISTORY] Invalid request: %s", e)
            await self._publish_error(_request_id_of(payload), "invalid_request", str(e))
            return

        await self.respond(request)

    async def respond(self, request: HistoryRequestMessage) -> Optional[HistoryResponseMessage]:
        try:
            response = await self._build_response(request)
        except SQLAlchemyError as e:
            logger.exception("[HISTORY] Storage error answering %s", request.request_id)
            await self._publish_error(request.request_id, "storage_error", str(e))
            return None

        outcome = await self.publisher.publish(
            topics.history_response(self.node_id), response, qos=1
        )
        if not outcome.sent:
            self._stats["publish_failed"] += 1
            logger.warning(
                "[HISTORY] Response %s not sent: %s", request.request_id, outcome.reason
            )
            return response

        self._stats["responses_sent"] += 1
        logger.info(
            "[HISTORY] Sent %s with %d records (max=%s)",
            request.request_id,
            len(response.data_points),
            response.max_sequence,
        )
        if response.is_sequence_based:
            await self.store.record_server_sync(response.end_sequence)
        return response

    async def _build_response(self, request: HistoryRequestMessage) -> HistoryResponseMessage:
        limit = min(request.limit or self.max_batch, self.max_batch)

        # El rango se lee antes que los datos: todo id <= max ya estaba escrito.
        seq_range = await self.ledger.get_sequence_range()

        if request.is_sequence_based:
            points = await self.store.read_sequence_range(
                request.start_sequence, request.end_sequence, limit
            )
        else:
            points = await self.store.read_time_range(request.start_time, request.end_time, limit)

        body = dict(
            node_id=self.node_id,
            request_id=request.request_id,
            max_sequence=seq_range.max,
            data_points=points,
            checksum=compute_checksum(points),
            record_count=len(points),
            timestamp=utc_now_iso(),
        )
        if request.is_sequence_based:
            body.update(
                start_sequence=request.start_sequence,
                end_sequence=_covered_through(request, points, limit, seq_range.max),
            )
        else:
            body.update(start_time=request.start_time, end_time=request.end_time)
        return HistoryResponseMessage(**body)

    async def _publish_error(self, request_id: Optional[str], error: str, message: str) -> None:
        self._stats["errors"] += 1
        outcome = await self.publisher.publish(
            topics.history_error(self.node_id),
            {"nodeId": self.node_id, "requestId": request_id, "error": error, "message": message},
            qos=1,
        )
        if not outcome.sent:
            logger.warning("[HISTORY] Error report not sent: %s", outcome.reason)


def _request_id_of(payload: bytes) -> Optional[str]:
    try:
        value = decode_json(payload).get("requestId")
    except ProtocolError:
        return None
    return value if isinstance(value, str) else None


def _covered_through(
    request: HistoryRequestMessage, points: list, limit: int, ceiling: int
) -> int:
    """Último id que el servidor puede dar por replicado tras esta respuesta.

    Un lote cortado por el límite cubre hasta su último punto. Si no, cubre
    la ventana entera hasta el máximo almacenado: los huecos (ids que ya no
    existen en el nodo) se saltan. start-1 significa sin progreso.
    """
    if points and len(points) >= limit:
        return points[-1].sequence_id
    covered = ceiling
    if request.end_sequence is not None:
        covered = min(covered, request.end_sequence - 1)
    if points:
        covered = max(covered, points[-1].sequence_id)
    return max(covered, request.start_sequence - 1)
