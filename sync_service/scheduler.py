"""SyncScheduler: lazo periódico que decide qué rango pedir a cada nodo.

En cada tick:
    1. GC de peticiones.
    2. Backpressure global: si hay >= global_pending_cap pendientes, se salta el tick.
    3. Nodos conectados, escalonados node_stagger_seconds entre sí.
    4. Por nodo: se salta si tiene >= node_pending_cap pendientes, si ya hay
       una petición en vuelo para lastSequence+1, o si está al día
       (lastSequence >= maxSequence).
    5. Si no, pide [lastSequence+1, lastSequence+1+batchSize).

Intervalo y tamaño de lote se leen de sync_settings en cada ciclo; al
cambiarlos se reinicia el timer del lazo.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.engine import Engine

from common.db import Database
from common.timeutil import utc_now_iso

from . import node_queries, request_queries, settings_queries
from .config import SyncConfig
from .history_requests import HistoryRequestManager
from .request_gc import GcReport, RequestGarbageCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerSettings:
    interval_seconds: float
    batch_size: int

    def to_dict(self) -> dict:
        return {"intervalSeconds": self.interval_seconds, "batchSize": self.batch_size}


@dataclass
class CycleReport:
    backpressure: bool = False
    pending_before: int = 0
    issued: dict[str, str] = field(default_factory=dict)  # node_id → request_id
    skipped: dict[str, str] = field(default_factory=dict)  # node_id → motivo
    gc: Optional[GcReport] = None


class SyncScheduler:
    def __init__(
        self,
        db: Database,
        requests: HistoryRequestManager,
        gc: RequestGarbageCollector,
        config: SyncConfig,
    ):
        self.db = db
        self.requests = requests
        self.gc = gc
        self.config = config

        self._task: Optional[asyncio.Task] = None
        self._cycles = 0

    # ------------------------------------------------------------------
    # Ajustes en caliente
    # ------------------------------------------------------------------

    async def initialize(self) -> SchedulerSettings:
        """Siembra sync_settings con los valores por defecto si no existen."""
        await self.db.run(self._seed_sync)
        return await self.get_settings()

    def _seed_sync(self, engine: Engine) -> None:
        now = utc_now_iso()
        with engine.begin() as conn:
            settings_queries.seed_value(
                conn,
                settings_queries.INTERVAL_KEY,
                str(self.config.default_interval_seconds),
                now,
            )
            settings_queries.seed_value(
                conn, settings_queries.BATCH_SIZE_KEY, str(self.config.default_batch_size), now
            )

    async def get_settings(self) -> SchedulerSettings:
        return await self.db.run(self._get_settings_sync)

    def _get_settings_sync(self, engine: Engine) -> SchedulerSettings:
        with engine.connect() as conn:
            interval = settings_queries.get_value(conn, settings_queries.INTERVAL_KEY)
            batch = settings_queries.get_value(conn, settings_queries.BATCH_SIZE_KEY)
        try:
            interval_seconds = float(interval) if interval is not None else None
        except ValueError:
            interval_seconds = None
        try:
            batch_size = int(batch) if batch is not None else None
        except ValueError:
            batch_size = None
        return SchedulerSettings(
            interval_seconds=max(
                interval_seconds or self.config.default_interval_seconds,
                self.config.min_interval_seconds,
            ),
            batch_size=batch_size or self.config.default_batch_size,
        )

    async def update_settings(
        self,
        interval_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
    ) -> SchedulerSettings:
        """Valida y persiste nuevos ajustes; reinicia el timer si el lazo corre.

        Raises:
            ValueError: intervalo por debajo del mínimo o lote fuera de rango.
        """
        if interval_seconds is not None and interval_seconds < self.config.min_interval_seconds:
            raise ValueError(
                f"interval must be at least {self.config.min_interval_seconds:g} seconds"
            )
        if batch_size is not None and not (1 <= batch_size <= self.config.max_batch_size):
            raise ValueError(f"batch size must be between 1 and {self.config.max_batch_size}")

        await self.db.run(self._update_sync, interval_seconds, batch_size)
        settings = await self.get_settings()
        logger.info(
            "[SYNC] Settings updated interval=%gs batch=%d",
            settings.interval_seconds,
            settings.batch_size,
        )
        if self.is_running:
            await self.stop()
            self.start()
        return settings

    @staticmethod
    def _update_sync(engine: Engine, interval_seconds: Optional[float], batch_size: Optional[int]) -> None:
        now = utc_now_iso()
        with engine.begin() as conn:
            if interval_seconds is not None:
                settings_queries.set_value(
                    conn, settings_queries.INTERVAL_KEY, str(float(interval_seconds)), now
                )
            if batch_size is not None:
                settings_queries.set_value(conn, settings_queries.BATCH_SIZE_KEY, str(int(batch_size)), now)

    # ------------------------------------------------------------------
    # Lazo
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycles(self) -> int:
        return self._cycles

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("[SYNC] Scheduler started")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[SYNC] Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            settings = await self.get_settings()
            await asyncio.sleep(settings.interval_seconds)
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("[SYNC] Scheduling cycle failed")

    # ------------------------------------------------------------------
    # Ciclo
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        self._cycles += 1
        report = CycleReport()

        try:
            report.gc = await self.gc.sweep()
        except Exception:
            logger.exception("[GC] Sweep failed")

        settings = await self.get_settings()
        pending_total = await self.db.run(_count_pending_sync, None)
        report.pending_before = pending_total

        if pending_total >= self.config.global_pending_cap:
            report.backpressure = True
            logger.warning(
                "[SYNC] Skipping cycle: %d pending requests (cap %d)",
                pending_total,
                self.config.global_pending_cap,
            )
            return report

        nodes = await self.db.run(_connected_nodes_sync)
        for index, node in enumerate(nodes):
            node_id = node["node_id"]
            if index and self.config.node_stagger_seconds > 0:
                await asyncio.sleep(self.config.node_stagger_seconds)

            if pending_total >= self.config.global_pending_cap:
                report.skipped[node_id] = "global_cap"
                continue

            try:
                reason, start = await self.db.run(self._plan_node_sync, node_id)
                if reason is not None:
                    report.skipped[node_id] = reason
                    logger.debug("[SYNC] Skipping %s: %s", node_id, reason)
                    continue

                issued = await self.requests.request_history(
                    node_id, start_sequence=start, end_sequence=start + settings.batch_size
                )
            except Exception:
                logger.exception("[SYNC] Failed to schedule node %s", node_id)
                report.skipped[node_id] = "error"
                continue

            pending_total += 1
            report.issued[node_id] = issued.request_id

        logger.info(
            "[SYNC] Cycle %d: nodes=%d issued=%d skipped=%d",
            self._cycles,
            len(nodes),
            len(report.issued),
            len(report.skipped),
        )
        return report

    def _plan_node_sync(self, engine: Engine, node_id: str) -> tuple[Optional[str], int]:
        with engine.connect() as conn:
            if request_queries.count_pending(conn, node_id) >= self.config.node_pending_cap:
                return "node_cap", 0

            info = node_queries.get_sequence_info(conn, node_id)
            last = info["last_sequence"] if info else 0
            start = last + 1

            if request_queries.pending_starts_at(conn, node_id, start):
                return "in_flight", start
            if info is not None and info["last_sequence"] >= info["max_sequence"]:
                return "caught_up", start
        return None, start


def _count_pending_sync(engine: Engine, node_id: Optional[str]) -> int:
    with engine.connect() as conn:
        return request_queries.count_pending(conn, node_id)


def _connected_nodes_sync(engine: Engine) -> list[dict]:
    with engine.connect() as conn:
        return node_queries.list_connected_nodes(conn)
