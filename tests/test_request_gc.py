"""Tests del RequestGarbageCollector."""

from datetime import timedelta

import pytest
from sqlalchemy import text

from common.timeutil import to_iso, utc_now
from sync_service import request_queries
from sync_service.request_gc import RequestGarbageCollector

from tests.conftest import count_rows, fetch_request


def _insert(engine, request_id, node_id="ug-1", age=timedelta(0), start=1, end=1001, status="pending"):
    with engine.begin() as conn:
        request_queries.insert_request(
            conn,
            request_id=request_id,
            node_id=node_id,
            request_time=to_iso(utc_now() - age),
            start_sequence=start,
            end_sequence=end,
        )
        if status == "completed":
            request_queries.mark_completed(conn, request_id, 0, to_iso(utc_now()))
        elif status == "timeout":
            request_queries.mark_timeout(conn, request_id, to_iso(utc_now()))


def _pending_ids(engine) -> list:
    with engine.connect() as conn:
        rows = conn.execute(
            text("SELECT request_id FROM history_requests WHERE status = 'pending' ORDER BY request_id")
        ).fetchall()
    return [r[0] for r in rows]


@pytest.fixture
def gc(server_db, sync_config) -> RequestGarbageCollector:
    return RequestGarbageCollector(server_db, sync_config)


# =============================================================================
# PENDIENTES VIEJAS → TIMEOUT
# =============================================================================

class TestStalePending:
    @pytest.mark.asyncio
    async def test_old_pending_times_out(self, gc, server_db):
        _insert(server_db.engine, "old", age=timedelta(hours=25))
        _insert(server_db.engine, "fresh", age=timedelta(seconds=30), start=1001, end=2001)

        report = await gc.sweep()

        assert report.timed_out == 1
        assert fetch_request(server_db.engine, "old")["status"] == "timeout"
        assert fetch_request(server_db.engine, "fresh")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_timed_out_no_longer_counts_as_pending(self, gc, server_db):
        _insert(server_db.engine, "old", age=timedelta(hours=25))
        _insert(server_db.engine, "old2", age=timedelta(hours=30), start=1001, end=2001)
        await gc.sweep()
        with server_db.engine.connect() as conn:
            assert request_queries.count_pending(conn, "ug-1") == 0

    @pytest.mark.asyncio
    async def test_completed_rows_untouched(self, gc, server_db):
        _insert(server_db.engine, "done", age=timedelta(hours=48), status="completed")
        await gc.sweep()
        assert fetch_request(server_db.engine, "done")["status"] == "completed"


# =============================================================================
# PENDIENTES MÁS ALLÁ DEL TIMEOUT DE PETICIÓN → TIMEOUT
# =============================================================================

class TestRequestTimeoutExpiry:
    """El timeout de 2 min también se aplica desde la base, sin timers en memoria."""

    @pytest.mark.asyncio
    async def test_pending_past_request_timeout_expires(self, gc, server_db):
        _insert(server_db.engine, "unanswered", age=timedelta(minutes=3))
        _insert(server_db.engine, "in-window", node_id="ug-2", age=timedelta(seconds=30))

        report = await gc.sweep()

        assert (report.timed_out, report.expired) == (0, 1)
        assert fetch_request(server_db.engine, "unanswered")["status"] == "timeout"
        assert fetch_request(server_db.engine, "in-window")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_expired_row_is_not_collapsed(self, gc, server_db):
        _insert(server_db.engine, "unanswered", age=timedelta(minutes=3))
        _insert(server_db.engine, "current", start=1001, end=2001)

        report = await gc.sweep()

        assert report.collapsed == 0
        assert fetch_request(server_db.engine, "unanswered")["status"] == "timeout"
        assert _pending_ids(server_db.engine) == ["current"]


# =============================================================================
# PURGA
# =============================================================================

class TestPurge:
    @pytest.mark.asyncio
    async def test_ancient_rows_deleted_any_status(self, gc, server_db):
        _insert(server_db.engine, "a", age=timedelta(days=31), status="completed")
        _insert(server_db.engine, "b", age=timedelta(days=40), status="timeout", start=5)
        _insert(server_db.engine, "c", age=timedelta(days=45), start=9)
        _insert(server_db.engine, "recent", age=timedelta(days=29), status="completed", start=7)

        report = await gc.sweep()

        assert report.purged == 3
        assert count_rows(server_db.engine, "history_requests") == 1
        assert fetch_request(server_db.engine, "recent") is not None


# =============================================================================
# COLAPSO DE DUPLICADAS
# =============================================================================

class TestDuplicateCollapse:
    @pytest.mark.asyncio
    async def test_keeps_most_recent(self, gc, server_db):
        _insert(server_db.engine, "older", age=timedelta(seconds=60))
        _insert(server_db.engine, "newer", age=timedelta(seconds=10))

        report = await gc.sweep()

        assert report.collapsed == 1
        assert fetch_request(server_db.engine, "older") is None
        assert fetch_request(server_db.engine, "newer")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_same_timestamp_keeps_last_inserted(self, gc, server_db):
        with server_db.engine.begin() as conn:
            for rid in ("first", "second", "third"):
                request_queries.insert_request(
                    conn,
                    request_id=rid,
                    node_id="ug-1",
                    request_time="2099-01-01T00:00:00.000000+00:00",
                    start_sequence=1,
                    end_sequence=1001,
                )
        await gc.sweep()
        assert _pending_ids(server_db.engine) == ["third"]

    @pytest.mark.asyncio
    async def test_one_pending_per_node_regardless_of_range(self, gc, server_db):
        _insert(server_db.engine, "older", start=1, end=1001, age=timedelta(seconds=20))
        _insert(server_db.engine, "newer", start=1001, end=2001)
        _insert(server_db.engine, "other-node", node_id="ug-2", start=1, end=1001, age=timedelta(seconds=20))

        report = await gc.sweep()

        assert report.collapsed == 1
        assert _pending_ids(server_db.engine) == ["newer", "other-node"]

    @pytest.mark.asyncio
    async def test_open_ended_duplicates_collapse(self, gc, server_db):
        _insert(server_db.engine, "x", start=50, end=None, age=timedelta(seconds=30))
        _insert(server_db.engine, "y", start=50, end=None)
        await gc.sweep()
        assert fetch_request(server_db.engine, "x") is None
        assert fetch_request(server_db.engine, "y") is not None

    @pytest.mark.asyncio
    async def test_finalized_duplicates_ignored(self, gc, server_db):
        _insert(server_db.engine, "done", age=timedelta(minutes=10), status="completed")
        _insert(server_db.engine, "live")
        report = await gc.sweep()
        assert report.collapsed == 0
        assert fetch_request(server_db.engine, "done")["status"] == "completed"
