"""SyncService: ensambla replicador, protocolo, GC, scheduler y sesión MQTT."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.engine import Engine

from common.config import Settings
from common.db import Database, create_sqlite_engine

from . import data_queries, node_queries, request_queries
from .broker_session import BrokerSession
from .config import SyncConfig
from .history_requests import HistoryRequestManager
from .message_router import MessageRouter
from .replicator import StorageReplicator
from .request_gc import RequestGarbageCollector
from .scheduler import CycleReport, SyncScheduler
from .schema import ensure_schema

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(self, db: Database, session: Any, config: Optional[SyncConfig] = None):
        self.db = db
        self.session = session
        self.config = config or SyncConfig.from_env()

        self.replicator = StorageReplicator(db)
        self.requests = HistoryRequestManager(db, self.replicator, session, self.config)
        self.gc = RequestGarbageCollector(db, self.config)
        self.scheduler = SyncScheduler(db, self.requests, self.gc, self.config)
        self.router = MessageRouter(db, self.requests, self.replicator)
        session.set_message_handler(self.router.route)

        self._prepared = False

    @classmethod
    def from_settings(cls, settings: Settings, config: Optional[SyncConfig] = None) -> "SyncService":
        engine = create_sqlite_engine(settings.server_db_url)
        session = BrokerSession(
            broker_host=settings.mqtt_host,
            broker_port=settings.mqtt_port,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            publish_ack_timeout=settings.publish_ack_timeout,
        )
        return cls(Database(engine), session, config)

    async def prepare(self) -> None:
        """Esquema y ajustes semilla; idempotente."""
        if self._prepared:
            return
        await self.db.run(ensure_schema)
        settings = await self.scheduler.initialize()
        self._prepared = True
        logger.info(
            "[SYNC] Prepared interval=%gs batch=%d",
            settings.interval_seconds,
            settings.batch_size,
        )

    async def start(self, run_scheduler: bool = True) -> None:
        await self.prepare()
        if not await self.session.start():
            logger.warning("[SYNC] Broker not reachable yet; requests will time out until it is")
        if run_scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        self.requests.close()
        await self.session.stop()

    async def run_once(self) -> CycleReport:
        await self.prepare()
        return await self.scheduler.run_cycle()

    # ------------------------------------------------------------------
    # Superficie de lectura
    # ------------------------------------------------------------------

    async def status_snapshot(self) -> dict:
        settings = await self.scheduler.get_settings()
        nodes, recent, pending = await self.db.run(_snapshot_sync)
        return {
            "nodes": nodes,
            "settings": settings.to_dict(),
            "pendingRequests": pending,
            "recentRequests": recent,
            "broker": self.session.health_check(),
        }

    async def get_node_sequence(self, node_id: str) -> Optional[dict]:
        return await self.db.run(_node_sequence_sync, node_id)

    async def list_requests(self, limit: int = 10, node_id: Optional[str] = None) -> list[dict]:
        return await self.db.run(_list_requests_sync, limit, node_id)

    async def query_sensor_data(self, **filters) -> list[dict]:
        return await self.db.run(_sensor_data_sync, filters)


def _snapshot_sync(engine: Engine) -> tuple[list[dict], list[dict], int]:
    with engine.connect() as conn:
        return (
            node_queries.list_nodes(conn),
            request_queries.list_recent(conn, 10),
            request_queries.count_pending(conn),
        )


def _node_sequence_sync(engine: Engine, node_id: str) -> Optional[dict]:
    with engine.connect() as conn:
        return node_queries.get_sequence_info(conn, node_id)


def _list_requests_sync(engine: Engine, limit: int, node_id: Optional[str]) -> list[dict]:
    with engine.connect() as conn:
        return request_queries.list_recent(conn, limit, node_id)


def _sensor_data_sync(engine: Engine, filters: dict) -> list[dict]:
    with engine.connect() as conn:
        return data_queries.query_readings(conn, **filters)
