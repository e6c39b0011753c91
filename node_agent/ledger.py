"""SequenceLedger: contador de secuencia persistente del nodo.

El contador vive en sequence_tracker y NO se deriva del número de filas:
sobrevive a escrituras parciales. Si el contador falta o es ilegible con
lecturas ya almacenadas, se falla rápido (LedgerCorruptionError) en vez de
reiniciar en cero y colisionar con secuencias ya replicadas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from common.db import Database
from common.errors import LedgerCorruptionError

logger = logging.getLogger(__name__)

COUNTER_KEY = "last_sequence_id"


@dataclass(frozen=True)
class SequenceRange:
    min: int
    max: int
    count: int

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "count": self.count}


def _read_counter(conn: Connection) -> int:
    row = conn.execute(
        text("SELECT value, typeof(value) AS kind FROM sequence_tracker WHERE key = :key"),
        {"key": COUNTER_KEY},
    ).mappings().first()
    if row is None:
        raise LedgerCorruptionError("sequence counter missing")
    if row["kind"] != "integer" or row["value"] < 0:
        raise LedgerCorruptionError(f"sequence counter unreadable: {row['value']!r}")
    return int(row["value"])


def _stored_max(conn: Connection) -> int:
    return int(conn.execute(text("SELECT COALESCE(MAX(sequence_id), 0) FROM readings")).scalar_one())


class SequenceLedger:
    def __init__(self, db: Database):
        self.db = db

    async def initialize(self) -> int:
        """Crea el contador en una base vacía y valida el existente.

        Returns:
            Valor actual del contador.
        """
        return await self.db.run(self._initialize_sync)

    @staticmethod
    def _initialize_sync(engine: Engine) -> int:
        with engine.begin() as conn:
            exists = conn.execute(
                text("SELECT COUNT(*) FROM sequence_tracker WHERE key = :key"),
                {"key": COUNTER_KEY},
            ).scalar_one()
            stored_max = _stored_max(conn)

            if not exists:
                if stored_max > 0:
                    raise LedgerCorruptionError(
                        f"sequence counter missing but readings exist up to {stored_max}"
                    )
                conn.execute(
                    text("INSERT INTO sequence_tracker (key, value) VALUES (:key, 0)"),
                    {"key": COUNTER_KEY},
                )
                logger.info("[LEDGER] Initialized sequence counter at 0")
                return 0

            current = _read_counter(conn)
            if current < stored_max:
                raise LedgerCorruptionError(
                    f"sequence counter {current} behind stored max {stored_max}"
                )
            logger.info("[LEDGER] Sequence counter at %d", current)
            return current

    @staticmethod
    def allocate(conn: Connection) -> int:
        """Reserva el siguiente sequence_id dentro de la transacción del llamador."""
        current = _read_counter(conn)
        result = conn.execute(
            text(
                "UPDATE sequence_tracker SET value = :next "
                "WHERE key = :key AND value = :current"
            ),
            {"next": current + 1, "key": COUNTER_KEY, "current": current},
        )
        if result.rowcount != 1:
            raise LedgerCorruptionError("sequence counter changed during allocation")
        return current + 1

    async def next_sequence_id(self) -> int:
        return await self.db.run(self._next_sync)

    def _next_sync(self, engine: Engine) -> int:
        with engine.begin() as conn:
            return self.allocate(conn)

    async def get_sequence_range(self) -> SequenceRange:
        """Rango calculado a partir de las lecturas realmente almacenadas."""
        return await self.db.run(self._range_sync)

    @staticmethod
    def _range_sync(engine: Engine) -> SequenceRange:
        with engine.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT COALESCE(MIN(sequence_id), 0) AS min_seq, "
                    "COALESCE(MAX(sequence_id), 0) AS max_seq, "
                    "COUNT(*) AS cnt FROM readings"
                )
            ).mappings().one()
        return SequenceRange(min=int(row["min_seq"]), max=int(row["max_seq"]), count=int(row["cnt"]))
