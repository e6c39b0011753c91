"""Despacho de mensajes entrantes del broker por tipo de topic."""

from __future__ import annotations

import logging
from typing import Union

from sqlalchemy.engine import Engine

from common import topics
from common.db import Database
from common.errors import ProtocolError, StorageWriteError
from common.protocol import decode_json, parse_data_points
from common.timeutil import utc_now_iso

from . import node_queries
from .history_requests import HistoryRequestManager
from .replicator import StorageReplicator

logger = logging.getLogger(__name__)


class MessageRouter:
    def __init__(self, db: Database, requests: HistoryRequestManager, replicator: StorageReplicator):
        self.db = db
        self.requests = requests
        self.replicator = replicator
        self._stats = {"routed": 0, "unroutable": 0, "invalid": 0, "live_stored": 0}

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    async def route(self, topic: str, payload: Union[bytes, str]) -> None:
        parsed = topics.parse_node_topic(topic)
        if parsed is None:
            self._stats["unroutable"] += 1
            logger.debug("[ROUTER] Unroutable topic %s", topic)
            return

        node_id, kind = parsed
        self._stats["routed"] += 1
        try:
            if kind == "history":
                await self.requests.handle_response(node_id, payload)
            elif kind == "history_error":
                await self.requests.handle_error(node_id, payload)
            elif kind == "status":
                await self.handle_status(node_id, payload)
            elif kind == "sensors":
                await self.handle_live(node_id, payload)
        except ProtocolError as e:
            self._stats["invalid"] += 1
            logger.warning("[ROUTER] Invalid %s message from %s: %s", kind, node_id, e)
        except StorageWriteError as e:
            logger.error("[ROUTER] Storage error for %s message from %s: %s", kind, node_id, e)

    async def handle_status(self, node_id: str, payload: Union[bytes, str]) -> None:
        """Liveness del nodo: online/offline y techo de replicación."""
        if not payload:
            # Retained borrado
            return
        body = decode_json(payload)
        status = "disconnected" if body.get("status") == "offline" else "connected"

        max_sequence = body.get("maxSequence")
        if max_sequence is None and isinstance(body.get("sequenceRange"), dict):
            max_sequence = body["sequenceRange"].get("max")
        if not isinstance(max_sequence, int) or isinstance(max_sequence, bool):
            max_sequence = None

        await self.db.run(_apply_status_sync, node_id, status, max_sequence)
        logger.info("[ROUTER] Node %s %s (max=%s)", node_id, status, max_sequence)

    async def handle_live(self, node_id: str, payload: Union[bytes, str]) -> None:
        """Telemetría en vivo: se aplica con la misma idempotencia que el historial."""
        body = decode_json(payload)
        items = body.get("readings")
        if items is None:
            items = [body]
        points, rejected = parse_data_points(items)
        if rejected:
            logger.warning("[ROUTER] Dropped %d invalid live readings from %s", rejected, node_id)
        if not points:
            return
        stored = await self.replicator.apply(node_id, points)
        self._stats["live_stored"] += stored


def _apply_status_sync(engine: Engine, node_id: str, status: str, max_sequence) -> None:
    now = utc_now_iso()
    with engine.begin() as conn:
        node_queries.set_sync_status(conn, node_id, status, now)
        if max_sequence is not None:
            node_queries.raise_max_sequence(conn, node_id, max_sequence, now)
