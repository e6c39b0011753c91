from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine


logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_sqlite_engine(url: str) -> Engine:
    """Crea un engine SQLite apto para ser usado desde hilos de trabajo."""
    logger.info("[DB] Crear engine url=%s", url)

    engine = create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _record):  # pragma: no cover - trivial
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Test de conexión: deja en logs si la base es accesible.
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK")
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ")

    return engine


class Database:
    """Ejecuta operaciones de almacenamiento fuera del event loop.

    Todas las operaciones lanzadas desde corrutinas pasan por un lock
    asyncio: nunca se solapan dos operaciones de almacenamiento del
    mismo loop. Cada llamada es un punto de suspensión.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Ejecuta fn(engine, *args, **kwargs) en un hilo de trabajo."""
        async with self._get_lock():
            return await asyncio.to_thread(fn, self.engine, *args, **kwargs)

    def dispose(self) -> None:
        self.engine.dispose()
