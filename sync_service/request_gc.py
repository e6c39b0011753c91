"""RequestGarbageCollector: evita que el scheduler se bloquee tras respuestas perdidas.

Barridos independientes, cada uno en su propia transacción y guardado por
el estado actual, así que es seguro ejecutarlo en paralelo con el
scheduler y el manejador de respuestas:

    stale     pending con más de stale_pending_hours → timeout
    expired   pending con más de request_timeout_seconds → timeout
              (los timers en memoria se pierden al reiniciar el servicio)
    purge     cualquier fila con más de purge_days → borrada
    collapse  más de una pending por nodo → solo queda la más reciente

Los timeouts van antes del colapso: una petición vencida termina en
timeout, no borrada.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.engine import Engine

from common.db import Database
from common.timeutil import to_iso, utc_now

from . import request_queries
from .config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class GcReport:
    timed_out: int = 0
    expired: int = 0
    purged: int = 0
    collapsed: int = 0

    @property
    def total(self) -> int:
        return self.timed_out + self.expired + self.purged + self.collapsed


class RequestGarbageCollector:
    def __init__(self, db: Database, config: SyncConfig):
        self.db = db
        self.config = config

    async def sweep(self, now: Optional[datetime] = None) -> GcReport:
        now = now or utc_now()
        report = GcReport()
        report.timed_out = await self.db.run(
            self._timeout_older_than_sync, now, timedelta(hours=self.config.stale_pending_hours)
        )
        report.expired = await self.db.run(
            self._timeout_older_than_sync, now, timedelta(seconds=self.config.request_timeout_seconds)
        )
        report.purged = await self.db.run(self._purge_sync, now)
        report.collapsed = await self.db.run(self._collapse_sync)
        if report.total:
            logger.info(
                "[GC] timed_out=%d expired=%d purged=%d collapsed=%d",
                report.timed_out,
                report.expired,
                report.purged,
                report.collapsed,
            )
        return report

    @staticmethod
    def _timeout_older_than_sync(engine: Engine, now: datetime, age: timedelta) -> int:
        with engine.begin() as conn:
            return request_queries.timeout_stale_pending(conn, to_iso(now - age), to_iso(now))

    def _purge_sync(self, engine: Engine, now: datetime) -> int:
        cutoff = now - timedelta(days=self.config.purge_days)
        with engine.begin() as conn:
            return request_queries.purge_older_than(conn, to_iso(cutoff))

    @staticmethod
    def _collapse_sync(engine: Engine) -> int:
        with engine.begin() as conn:
            return request_queries.collapse_duplicate_pending(conn)
