"""Tests del despacho de mensajes del servidor (status, telemetría, historial)."""

import json

import pytest
from sqlalchemy import text

from common.protocol import encode_message
from sync_service import node_queries
from sync_service.history_requests import HistoryRequestManager
from sync_service.message_router import MessageRouter
from sync_service.replicator import StorageReplicator

from tests.conftest import count_rows, fetch_request, set_sequence_info


@pytest.fixture
def router(server_db, publisher, sync_config):
    replicator = StorageReplicator(server_db)
    manager = HistoryRequestManager(server_db, replicator, publisher, sync_config)
    yield MessageRouter(server_db, manager, replicator)
    manager.close()


def _status(engine, node_id):
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT * FROM node_sync_status WHERE node_id = :n"), {"n": node_id}
        ).mappings().first()
    return dict(row) if row else None


def _reading(seq, **overrides):
    body = {
        "sequence_id": seq,
        "sensorId": "t1",
        "sensorType": "aht10",
        "type": "temperature",
        "value": 20.0 + seq,
        "timestamp": f"2026-02-01T00:00:{seq:02d}.000Z",
    }
    body.update(overrides)
    return body


# =============================================================================
# LIVENESS
# =============================================================================

class TestNodeStatus:
    @pytest.mark.asyncio
    async def test_online_marks_connected(self, router, server_db):
        await router.route(
            "undergrowth/nodes/ug-1/status",
            encode_message({"node_id": "ug-1", "status": "online", "maxSequence": 50}),
        )
        assert _status(server_db.engine, "ug-1")["sync_status"] == "connected"
        # Sin respuesta previa no se crea NodeSequenceInfo
        assert count_rows(server_db.engine, "node_sequence_info") == 0

    @pytest.mark.asyncio
    async def test_offline_last_will_marks_disconnected(self, router, server_db):
        await router.route("undergrowth/nodes/ug-1/status", encode_message({"status": "online"}))
        await router.route("undergrowth/nodes/ug-1/status", encode_message({"status": "offline"}))
        assert _status(server_db.engine, "ug-1")["sync_status"] == "disconnected"

    @pytest.mark.asyncio
    async def test_status_raises_existing_max_only_forward(self, router, server_db):
        set_sequence_info(server_db.engine, "ug-1", last=100, maximum=100)

        await router.route(
            "undergrowth/nodes/ug-1/status",
            encode_message({"status": "online", "sequenceRange": {"min": 1, "max": 180, "count": 180}}),
        )
        await router.route(
            "undergrowth/nodes/ug-1/status", encode_message({"status": "online", "maxSequence": 90})
        )

        with server_db.engine.connect() as conn:
            info = node_queries.get_sequence_info(conn, "ug-1")
        assert (info["last_sequence"], info["max_sequence"]) == (100, 180)

    @pytest.mark.asyncio
    async def test_cleared_retained_message_ignored(self, router, server_db):
        await router.route("undergrowth/nodes/ug-1/status", b"")
        assert _status(server_db.engine, "ug-1") is None


# =============================================================================
# TELEMETRÍA EN VIVO
# =============================================================================

class TestLiveTelemetry:
    @pytest.mark.asyncio
    async def test_live_readings_stored_idempotently(self, router, server_db):
        payload = encode_message({"node_id": "ug-1", "readings": [_reading(1), _reading(2)]})

        await router.route("undergrowth/nodes/ug-1/responses/sensors", payload)
        await router.route("undergrowth/nodes/ug-1/responses/sensors", payload)

        assert count_rows(server_db.engine, "sensor_data") == 2
        assert router.stats["live_stored"] == 2

    @pytest.mark.asyncio
    async def test_legacy_single_reading_with_variant_names(self, router, server_db):
        body = _reading(3)
        body["readingType"] = body.pop("type")
        await router.route("undergrowth/nodes/ug-1/sensors", json.dumps(body).encode())
        assert count_rows(server_db.engine, "sensor_data", "reading_type = 'temperature'") == 1

    @pytest.mark.asyncio
    async def test_live_data_does_not_move_progress(self, router, server_db):
        await router.route(
            "undergrowth/nodes/ug-1/responses/sensors",
            encode_message({"readings": [_reading(7)]}),
        )
        assert count_rows(server_db.engine, "node_sequence_info") == 0

    @pytest.mark.asyncio
    async def test_invalid_payload_contained(self, router):
        await router.route("undergrowth/nodes/ug-1/responses/sensors", b"not json")
        assert router.stats["invalid"] == 1


# =============================================================================
# HISTORIAL
# =============================================================================

class TestHistoryRouting:
    @pytest.mark.asyncio
    async def test_response_routed_to_protocol(self, router, server_db):
        issued = await router.requests.request_history("ug-1", start_sequence=1, end_sequence=3)
        await router.route(
            "undergrowth/nodes/ug-1/history",
            encode_message(
                {
                    "nodeId": "ug-1",
                    "requestId": issued.request_id,
                    "startSequence": 1,
                    "endSequence": 2,
                    "maxSequence": 2,
                    "dataPoints": [_reading(1), _reading(2)],
                }
            ),
        )
        assert fetch_request(server_db.engine, issued.request_id)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_unroutable_topic(self, router):
        await router.route("undergrowth/server/requests/ug-1/history", b"{}")
        assert router.stats["unroutable"] == 1
