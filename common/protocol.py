"""Contrato de mensajes del protocolo de historial.

Los payloads JSON admiten variantes de nombres de campo (type/readingType,
sensorId/sensor_id, ...). Se normalizan aquí, en la frontera de transporte,
a un único DataPoint canónico: el resto del código nunca ramifica por
variantes de nombre.

Formato de petición (servidor → nodo):
{
    "requestId": "req_1738300000000_a1b2c3",
    "startSequence": 1001,
    "endSequence": 2001,        # exclusivo; null = abierto
    "protocol_version": "1.0"
}

Formato de respuesta (nodo → servidor):
{
    "nodeId": "ug-b827eb123456",
    "requestId": "req_1738300000000_a1b2c3",
    "startSequence": 1001,
    "endSequence": 2000,        # último sequence_id entregado
    "maxSequence": 2500,
    "dataPoints": [{"sequence_id": 1001, "sensorId": "t1", ...}],
    "checksum": "<sha256 hex>",
    "protocol_version": "1.0"
}
"""

from __future__ import annotations

import hashlib
import json
import math
import secrets
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ProtocolError
from .timeutil import epoch_ms

PROTOCOL_VERSION = "1.0"

# (nombre canónico, variantes aceptadas en orden de preferencia)
_DATAPOINT_ALIASES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sequence_id", ("sequence_id", "sequenceId")),
    ("sensor_id", ("sensorId", "sensor_id")),
    ("sensor_type", ("sensorType", "sensor_type")),
    ("reading_type", ("type", "readingType", "reading_type")),
)


def new_request_id() -> str:
    return f"req_{epoch_ms()}_{secrets.token_hex(4)}"


class DataPoint(BaseModel):
    """Lectura en forma canónica."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    sequence_id: Optional[int] = None
    sensor_id: str
    sensor_type: str
    reading_type: str
    value: float
    timestamp: str

    @model_validator(mode="before")
    @classmethod
    def normalize_field_names(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        for canonical, variants in _DATAPOINT_ALIASES:
            for name in variants:
                if data.get(name) is not None:
                    out[canonical] = data[name]
                    break
        if out.get("sensor_type") is None and out.get("sensor_id") is not None:
            out["sensor_type"] = out["sensor_id"]
        if out.get("reading_type") is None and out.get("sensor_type") is not None:
            out["reading_type"] = out["sensor_type"]
        return out

    @field_validator("sensor_id", "sensor_type", "reading_type", mode="before")
    @classmethod
    def coerce_str(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("value")
    @classmethod
    def validate_value(cls, v):
        if math.isnan(v):
            raise ValueError("Value is NaN")
        if math.isinf(v):
            raise ValueError("Value is infinite")
        return v

    def to_wire(self) -> dict[str, Any]:
        return {
            "sequence_id": self.sequence_id,
            "sensorId": self.sensor_id,
            "sensorType": self.sensor_type,
            "type": self.reading_type,
            "value": self.value,
            "timestamp": self.timestamp,
        }


class HistoryRequestMessage(BaseModel):
    """Petición de historial por rango de secuencia o de tiempo."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    request_id: str = Field(..., alias="requestId", min_length=1)
    start_sequence: Optional[int] = Field(default=None, alias="startSequence", ge=0)
    end_sequence: Optional[int] = Field(default=None, alias="endSequence", ge=0)
    limit: Optional[int] = Field(default=None, ge=1)
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")

    @model_validator(mode="after")
    def check_range(self):
        if self.start_sequence is None and (self.start_time is None or self.end_time is None):
            raise ValueError("request needs startSequence or both startTime and endTime")
        if (
            self.start_sequence is not None
            and self.end_sequence is not None
            and self.end_sequence < self.start_sequence
        ):
            raise ValueError("endSequence before startSequence")
        return self

    @property
    def is_sequence_based(self) -> bool:
        return self.start_sequence is not None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"requestId": self.request_id}
        if self.is_sequence_based:
            body["startSequence"] = self.start_sequence
            body["endSequence"] = self.end_sequence
            if self.limit is not None:
                body["limit"] = self.limit
        else:
            body["startTime"] = self.start_time
            body["endTime"] = self.end_time
        return body


class HistoryResponseMessage(BaseModel):
    """Respuesta de historial publicada por el nodo."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    node_id: Optional[str] = Field(default=None, alias="nodeId")
    request_id: str = Field(..., alias="requestId", min_length=1)
    start_sequence: Optional[int] = Field(default=None, alias="startSequence")
    end_sequence: Optional[int] = Field(default=None, alias="endSequence")
    max_sequence: Optional[int] = Field(default=None, alias="maxSequence")
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    data_points: list[DataPoint] = Field(default_factory=list, alias="dataPoints")
    checksum: Optional[str] = None
    record_count: Optional[int] = Field(default=None, alias="recordCount")
    timestamp: Optional[str] = None

    @property
    def is_sequence_based(self) -> bool:
        return self.start_sequence is not None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "nodeId": self.node_id,
            "requestId": self.request_id,
            "maxSequence": self.max_sequence,
            "dataPoints": [p.to_wire() for p in self.data_points],
            "recordCount": len(self.data_points),
            "checksum": self.checksum,
            "timestamp": self.timestamp,
        }
        if self.is_sequence_based:
            body["startSequence"] = self.start_sequence
            body["endSequence"] = self.end_sequence
        else:
            body["startTime"] = self.start_time
            body["endTime"] = self.end_time
        return body


def compute_checksum(points: list[DataPoint]) -> str:
    """SHA-256 hex del JSON canónico de los dataPoints."""
    canonical = json.dumps(
        [p.to_wire() for p in points],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_checksum(response: HistoryResponseMessage) -> Optional[str]:
    """Devuelve el checksum esperado si no coincide; None si es válido o no viene."""
    if not response.checksum:
        return None
    expected = compute_checksum(response.data_points)
    if expected != response.checksum:
        return expected
    return None


def encode_message(message: Union[dict[str, Any], BaseModel]) -> bytes:
    """Serializa a JSON UTF-8 añadiendo protocol_version."""
    body = message.to_wire() if isinstance(message, BaseModel) else dict(message)
    body.setdefault("protocol_version", PROTOCOL_VERSION)
    return json.dumps(body, ensure_ascii=False).encode("utf-8")


def decode_json(payload: Union[bytes, str]) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Payload must be a JSON object")
    return data


def parse_request(payload: Union[bytes, str, dict[str, Any]]) -> HistoryRequestMessage:
    data = payload if isinstance(payload, dict) else decode_json(payload)
    try:
        return HistoryRequestMessage.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid history request: {e.errors()[0].get('msg')}") from e


def parse_response(payload: Union[bytes, str, dict[str, Any]]) -> HistoryResponseMessage:
    data = payload if isinstance(payload, dict) else decode_json(payload)
    try:
        return HistoryResponseMessage.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid history response: {e.errors()[0].get('msg')}") from e


def parse_data_points(items: Any) -> tuple[list[DataPoint], int]:
    """Normaliza una lista de lecturas; devuelve (válidas, descartadas)."""
    if not isinstance(items, list):
        raise ProtocolError("readings must be a list")
    points: list[DataPoint] = []
    rejected = 0
    for item in items:
        try:
            points.append(DataPoint.model_validate(item))
        except ValidationError:
            rejected += 1
    return points, rejected
