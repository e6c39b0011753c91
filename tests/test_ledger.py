"""Tests del SequenceLedger y del almacenamiento local del nodo."""

import pytest
from sqlalchemy import text

from common.db import Database, create_sqlite_engine
from common.errors import LedgerCorruptionError
from node_agent.ledger import SequenceLedger
from node_agent.storage import ReadingStore, ensure_node_schema


def _open(path) -> Database:
    engine = create_sqlite_engine(f"sqlite:///{path}")
    ensure_node_schema(engine)
    return Database(engine)


# =============================================================================
# MONOTONÍA
# =============================================================================

class TestMonotonicity:
    """Los sequence_id crecen estrictamente, incluso tras reiniciar."""

    @pytest.mark.asyncio
    async def test_fresh_ledger_starts_at_one(self, node_db):
        ledger = SequenceLedger(node_db)
        assert await ledger.initialize() == 0
        assert [await ledger.next_sequence_id() for _ in range(3)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        path = tmp_path / "node.db"
        db = _open(path)
        ledger = SequenceLedger(db)
        await ledger.initialize()
        store = ReadingStore(db, ledger, "ug-1")
        first = [(await store.record("t1", "temperature", 20.0 + i)).sequence_id for i in range(5)]
        db.dispose()

        db2 = _open(path)
        ledger2 = SequenceLedger(db2)
        assert await ledger2.initialize() == 5
        store2 = ReadingStore(db2, ledger2, "ug-1")
        after = (await store2.record("t1", "temperature", 30.0)).sequence_id
        db2.dispose()

        assert first == [1, 2, 3, 4, 5]
        assert after == 6

    @pytest.mark.asyncio
    async def test_counter_not_derived_from_rows(self, node_db):
        """Un id consumido sin fila (escritura fallida) deja hueco, no se reutiliza."""
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        await store.record("t1", "temperature", 1.0)
        await ledger.next_sequence_id()  # consumido sin lectura
        point = await store.record("t1", "temperature", 2.0)
        assert point.sequence_id == 3


# =============================================================================
# CORRUPCIÓN
# =============================================================================

class TestCorruption:
    """Contador ilegible o inconsistente: fallar rápido, nunca reiniciar en 0."""

    @pytest.mark.asyncio
    async def test_unreadable_counter(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        with node_db.engine.begin() as conn:
            conn.execute(text("UPDATE sequence_tracker SET value = 'garbage'"))

        with pytest.raises(LedgerCorruptionError):
            await ledger.initialize()
        with pytest.raises(LedgerCorruptionError):
            await ledger.next_sequence_id()

    @pytest.mark.asyncio
    async def test_missing_counter_with_readings(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        await store.record("t1", "temperature", 1.0)
        with node_db.engine.begin() as conn:
            conn.execute(text("DELETE FROM sequence_tracker"))

        with pytest.raises(LedgerCorruptionError):
            await ledger.initialize()
        with pytest.raises(LedgerCorruptionError):
            await store.record("t1", "temperature", 2.0)

    @pytest.mark.asyncio
    async def test_counter_behind_stored_max(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        for i in range(3):
            await store.record("t1", "temperature", float(i))
        with node_db.engine.begin() as conn:
            conn.execute(text("UPDATE sequence_tracker SET value = 1"))

        with pytest.raises(LedgerCorruptionError):
            await ledger.initialize()

    @pytest.mark.asyncio
    async def test_failed_record_leaves_no_row(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        with node_db.engine.begin() as conn:
            conn.execute(text("UPDATE sequence_tracker SET value = 'x'"))
        with pytest.raises(LedgerCorruptionError):
            await store.record("t1", "temperature", 1.0)
        with node_db.engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM readings")).scalar_one() == 0


# =============================================================================
# RANGO Y LECTURAS
# =============================================================================

class TestRangeAndReads:
    @pytest.mark.asyncio
    async def test_empty_range(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        rng = await ledger.get_sequence_range()
        assert (rng.min, rng.max, rng.count) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_range_from_stored_rows(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        for i in range(4):
            await store.record("t1", "temperature", float(i))
        await ledger.next_sequence_id()  # hueco: el rango refleja filas reales

        rng = await ledger.get_sequence_range()
        assert rng.to_dict() == {"min": 1, "max": 4, "count": 4}

    @pytest.mark.asyncio
    async def test_read_sequence_range_is_half_open(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        for i in range(10):
            await store.record("t1", "temperature", float(i))

        points = await store.read_sequence_range(3, 6, limit=1000)
        assert [p.sequence_id for p in points] == [3, 4, 5]

        open_ended = await store.read_sequence_range(8, None, limit=1000)
        assert [p.sequence_id for p in open_ended] == [8, 9, 10]

        limited = await store.read_sequence_range(1, None, limit=2)
        assert [p.sequence_id for p in limited] == [1, 2]

    @pytest.mark.asyncio
    async def test_read_time_range(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        await store.record("t1", "temperature", 1.0, timestamp="2026-01-01T00:00:00.000Z")
        await store.record("t1", "temperature", 2.0, timestamp="2026-01-02T00:00:00.000Z")
        await store.record("t1", "temperature", 3.0, timestamp="2026-01-03T00:00:00.000Z")

        points = await store.read_time_range("2026-01-01T12:00:00Z", "2026-01-03T00:00:00.000Z", 100)
        assert [p.value for p in points] == [2.0, 3.0]

    @pytest.mark.asyncio
    async def test_server_sync_only_moves_forward(self, node_db):
        ledger = SequenceLedger(node_db)
        await ledger.initialize()
        store = ReadingStore(node_db, ledger, "ug-1")
        await store.record_server_sync(100)
        await store.record_server_sync(40)
        row = await store.get_server_sync()
        assert row["last_sequence"] == 100
        assert row["last_sync_time"] is not None
