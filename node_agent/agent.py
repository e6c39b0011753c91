"""NodeAgent: conecta ledger, almacenamiento, transporte y respondedor.

El nodo sigue operando en modo standalone (solo almacena) mientras no hay
broker: la fuente de verdad es su propia base, re-solicitable después.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from common import topics
from common.config import Settings
from common.db import Database, create_sqlite_engine
from common.mqtt import PublishOutcome
from common.protocol import DataPoint, encode_message
from common.timeutil import utc_now_iso

from .connection import ConnectionConfig, ConnectionManager
from .discovery import BrokerResolver, resolver_from_settings
from .history_responder import HistoryResponder
from .ledger import SequenceLedger
from .storage import ReadingStore, ensure_node_schema

logger = logging.getLogger(__name__)


class NodeAgent:
    def __init__(
        self,
        node_id: str,
        db: Database,
        resolver: BrokerResolver,
        connection_config: Optional[ConnectionConfig] = None,
        status_interval: float = 60.0,
        max_batch: int = 1000,
        client_factory: Optional[Callable[[ConnectionConfig], Any]] = None,
    ):
        self.node_id = node_id
        self.db = db
        self.status_interval = status_interval

        self.ledger = SequenceLedger(db)
        self.store = ReadingStore(db, self.ledger, node_id)

        config = connection_config or ConnectionConfig(client_id=f"undergrowth-node-{node_id}")
        config.will_topic = topics.node_status(node_id)
        config.will_payload = encode_message(self._offline_status())

        kwargs = {"client_factory": client_factory} if client_factory else {}
        self.connection = ConnectionManager(
            resolver,
            config,
            control_topics=(topics.node_requests_filter(node_id),),
            **kwargs,
        )
        self.responder = HistoryResponder(node_id, self.store, self.ledger, self.connection, max_batch)
        self.connection.set_message_handler(self.responder.handle_message)
        self.connection.add_connected_callback(self.publish_status)

        self._status_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "NodeAgent":
        engine = create_sqlite_engine(settings.node_db_url)
        resolver = resolver_from_settings(
            settings.mqtt_host, settings.mqtt_port, settings.mqtt_discovery_host
        )
        config = ConnectionConfig.from_settings(
            settings, client_id=f"undergrowth-node-{settings.node_id}"
        )
        return cls(
            settings.node_id,
            Database(engine),
            resolver,
            connection_config=config,
            status_interval=settings.status_interval,
            max_batch=settings.node_max_batch,
            **kwargs,
        )

    async def start(self) -> None:
        await self.db.run(ensure_node_schema)
        await self.ledger.initialize()
        connected = await self.connection.start()
        if not connected:
            logger.warning("[NODE] Broker unavailable, running standalone")
        self._status_task = asyncio.create_task(self._status_loop())
        logger.info("[NODE] Node %s started", self.node_id)

    async def stop(self) -> None:
        if self._status_task:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
            self._status_task = None
        if self.connection.is_connected:
            await self.connection.publish(
                topics.node_status(self.node_id), self._offline_status(), qos=1, retain=True
            )
        await self.connection.stop()
        logger.info("[NODE] Node %s stopped", self.node_id)

    async def record_reading(
        self,
        sensor_id: str,
        reading_type: str,
        value: float,
        timestamp: Optional[str] = None,
        sensor_type: Optional[str] = None,
    ) -> DataPoint:
        """Almacena la lectura y la publica como telemetría en vivo (best effort)."""
        point = await self.store.record(sensor_id, reading_type, value, timestamp, sensor_type)
        outcome = await self.connection.publish(
            topics.live_sensors(self.node_id),
            {
                "node_id": self.node_id,
                "timestamp": utc_now_iso(),
                "readings": [point.to_wire()],
            },
            qos=1,
        )
        if not outcome.sent:
            logger.debug("[NODE] Live publish skipped seq=%s: %s", point.sequence_id, outcome.reason)
        return point

    async def publish_status(self) -> PublishOutcome:
        seq_range = await self.ledger.get_sequence_range()
        return await self.connection.publish(
            topics.node_status(self.node_id),
            {
                "node_id": self.node_id,
                "status": "online",
                "timestamp": utc_now_iso(),
                "sequenceRange": seq_range.to_dict(),
                "maxSequence": seq_range.max,
            },
            qos=1,
            retain=True,
        )

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self.status_interval)
            if not self.connection.is_connected:
                continue
            try:
                outcome = await self.publish_status()
                if not outcome.sent:
                    logger.warning("[NODE] Status not published: %s", outcome.reason)
            except Exception:
                logger.exception("[NODE] Status publish failed")

    def _offline_status(self) -> dict:
        return {"node_id": self.node_id, "status": "offline", "timestamp": utc_now_iso()}
