"""Tests del contrato de mensajes del protocolo de historial."""

import json
import math

import pytest

from common import topics
from common.errors import ProtocolError
from common.protocol import (
    PROTOCOL_VERSION,
    DataPoint,
    HistoryResponseMessage,
    compute_checksum,
    encode_message,
    new_request_id,
    parse_data_points,
    parse_request,
    parse_response,
    verify_checksum,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def wire_point() -> dict:
    return {
        "sequence_id": 7,
        "sensorId": "t1",
        "sensorType": "aht10",
        "type": "temperature",
        "value": 21.5,
        "timestamp": "2026-01-31T08:00:00.123Z",
    }


# =============================================================================
# NORMALIZACIÓN DE DATAPOINTS
# =============================================================================

class TestDataPointNormalization:
    """Variantes de nombres de campo se normalizan en la frontera."""

    def test_canonical_wire_shape(self, wire_point):
        point = DataPoint.model_validate(wire_point)
        assert point.sequence_id == 7
        assert point.sensor_id == "t1"
        assert point.reading_type == "temperature"
        assert point.to_wire() == wire_point

    def test_alternative_field_names(self):
        point = DataPoint.model_validate(
            {
                "sequenceId": 3,
                "sensor_id": "h1",
                "readingType": "humidity",
                "value": 55,
                "timestamp": "2026-01-31T08:00:00.000Z",
            }
        )
        assert point.sequence_id == 3
        assert point.sensor_id == "h1"
        assert point.reading_type == "humidity"
        assert point.sensor_type == "h1"
        assert point.value == 55.0

    def test_reading_type_snake_case(self):
        point = DataPoint.model_validate(
            {"sensorId": 4, "reading_type": "temperature", "value": 1.0, "timestamp": "x"}
        )
        assert point.sensor_id == "4"
        assert point.reading_type == "temperature"

    @pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
    def test_non_finite_values_rejected(self, wire_point, bad):
        wire_point["value"] = bad
        with pytest.raises(ValueError):
            DataPoint.model_validate(wire_point)

    def test_parse_data_points_counts_rejected(self, wire_point):
        points, rejected = parse_data_points([wire_point, {"sensorId": "x"}])
        assert len(points) == 1
        assert rejected == 1

    def test_parse_data_points_requires_list(self):
        with pytest.raises(ProtocolError):
            parse_data_points({"not": "a list"})


# =============================================================================
# PETICIONES Y RESPUESTAS
# =============================================================================

class TestMessages:
    def test_request_id_format(self):
        rid = new_request_id()
        prefix, ms, suffix = rid.split("_")
        assert prefix == "req"
        assert ms.isdigit()
        assert len(suffix) == 8

    def test_sequence_request_parsed(self):
        req = parse_request(b'{"requestId": "r1", "startSequence": 1, "endSequence": 1001}')
        assert req.is_sequence_based
        assert req.start_sequence == 1
        assert req.end_sequence == 1001

    def test_open_ended_request(self):
        req = parse_request({"requestId": "r1", "startSequence": 5, "endSequence": None})
        assert req.end_sequence is None

    def test_time_request_parsed(self):
        req = parse_request(
            {"requestId": "r2", "startTime": "2026-01-01T00:00:00Z", "endTime": "2026-01-02T00:00:00Z"}
        )
        assert not req.is_sequence_based

    def test_request_without_range_rejected(self):
        with pytest.raises(ProtocolError):
            parse_request({"requestId": "r3", "startTime": "2026-01-01T00:00:00Z"})

    def test_inverted_range_rejected(self):
        with pytest.raises(ProtocolError):
            parse_request({"requestId": "r4", "startSequence": 10, "endSequence": 5})

    def test_invalid_json_rejected(self):
        with pytest.raises(ProtocolError):
            parse_response(b"{not json")

    def test_non_object_rejected(self):
        with pytest.raises(ProtocolError):
            parse_response(b"[1, 2]")

    def test_response_with_variant_points(self, wire_point):
        wire_point.pop("type")
        wire_point["readingType"] = "temperature"
        resp = parse_response(
            {
                "requestId": "r1",
                "startSequence": 7,
                "endSequence": 7,
                "maxSequence": 9,
                "dataPoints": [wire_point],
            }
        )
        assert resp.data_points[0].reading_type == "temperature"
        assert resp.max_sequence == 9

    def test_encode_adds_protocol_version(self):
        body = json.loads(encode_message({"status": "online"}))
        assert body["protocol_version"] == PROTOCOL_VERSION


# =============================================================================
# CHECKSUM
# =============================================================================

class TestChecksum:
    """SHA-256 sobre el JSON canónico de los dataPoints."""

    def test_deterministic_and_hex(self, wire_point):
        points = [DataPoint.model_validate(wire_point)]
        assert compute_checksum(points) == compute_checksum(list(points))
        assert len(compute_checksum(points)) == 64

    def test_order_sensitive(self, wire_point):
        a = DataPoint.model_validate(wire_point)
        b = DataPoint.model_validate({**wire_point, "sequence_id": 8, "value": 22.0})
        assert compute_checksum([a, b]) != compute_checksum([b, a])

    def test_field_name_variants_do_not_change_checksum(self, wire_point):
        variant = dict(wire_point)
        variant["readingType"] = variant.pop("type")
        assert compute_checksum([DataPoint.model_validate(wire_point)]) == compute_checksum(
            [DataPoint.model_validate(variant)]
        )

    def test_verify(self, wire_point):
        points = [DataPoint.model_validate(wire_point)]
        good = HistoryResponseMessage(request_id="r", data_points=points, checksum=compute_checksum(points))
        bad = HistoryResponseMessage(request_id="r", data_points=points, checksum="0" * 64)
        missing = HistoryResponseMessage(request_id="r", data_points=points)
        assert verify_checksum(good) is None
        assert verify_checksum(bad) == compute_checksum(points)
        assert verify_checksum(missing) is None


# =============================================================================
# TOPICS
# =============================================================================

class TestTopics:
    def test_request_topic(self):
        assert topics.history_request("ug-1") == "undergrowth/server/requests/ug-1/history"

    @pytest.mark.parametrize(
        "topic,expected",
        [
            ("undergrowth/nodes/ug-1/history", ("ug-1", "history")),
            ("undergrowth/nodes/ug-1/history/error", ("ug-1", "history_error")),
            ("undergrowth/nodes/ug-1/status", ("ug-1", "status")),
            ("undergrowth/nodes/ug-1/responses/sensors", ("ug-1", "sensors")),
            ("undergrowth/nodes/ug-1/sensors", ("ug-1", "sensors")),
            ("undergrowth/server/requests/ug-1/history", None),
            ("other/nodes/ug-1/status", None),
        ],
    )
    def test_parse_node_topic(self, topic, expected):
        assert topics.parse_node_topic(topic) == expected
