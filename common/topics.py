"""Namespace de topics MQTT de Undergrowth."""

from __future__ import annotations

from typing import Optional

ROOT = "undergrowth"

QOS_CONTROL = 1


def history_request(node_id: str) -> str:
    """Servidor → nodo: petición de historial."""
    return f"{ROOT}/server/requests/{node_id}/history"


def node_requests_filter(node_id: str) -> str:
    """Todo lo que el servidor dirige a un nodo."""
    return f"{ROOT}/server/requests/{node_id}/#"


def history_response(node_id: str) -> str:
    return f"{ROOT}/nodes/{node_id}/history"


def history_error(node_id: str) -> str:
    return f"{ROOT}/nodes/{node_id}/history/error"


def node_status(node_id: str) -> str:
    return f"{ROOT}/nodes/{node_id}/status"


def live_sensors(node_id: str) -> str:
    return f"{ROOT}/nodes/{node_id}/responses/sensors"


# Suscripciones del servidor
HISTORY_RESPONSES = f"{ROOT}/nodes/+/history"
HISTORY_ERRORS = f"{ROOT}/nodes/+/history/error"
NODE_STATUS = f"{ROOT}/nodes/+/status"
LIVE_SENSORS = f"{ROOT}/nodes/+/responses/sensors"
LEGACY_SENSORS = f"{ROOT}/nodes/+/sensors"

SERVER_SUBSCRIPTIONS = (
    HISTORY_RESPONSES,
    HISTORY_ERRORS,
    NODE_STATUS,
    LIVE_SENSORS,
    LEGACY_SENSORS,
)


def parse_node_topic(topic: str) -> Optional[tuple[str, str]]:
    """Devuelve (node_id, kind) para topics undergrowth/nodes/{id}/...

    kind ∈ {"history", "history_error", "status", "sensors"}; None si el
    topic no pertenece al namespace de nodos.
    """
    parts = topic.split("/")
    if len(parts) < 4 or parts[0] != ROOT or parts[1] != "nodes":
        return None
    node_id = parts[2]
    rest = parts[3:]
    if rest == ["history"]:
        return node_id, "history"
    if rest == ["history", "error"]:
        return node_id, "history_error"
    if rest == ["status"]:
        return node_id, "status"
    if rest in (["responses", "sensors"], ["sensors"]):
        return node_id, "sensors"
    return None
