"""Helpers paho-mqtt compartidos por nodo y servidor."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishOutcome:
    """Resultado de publicar; publicar nunca lanza."""
    sent: bool
    reason: Optional[str] = None


def build_client(
    client_id: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> mqtt.Client:
    """Crea un cliente paho (API de callbacks v2, MQTT 3.1.1)."""
    client = mqtt.Client(
        client_id=f"{client_id}-{int(time.time())}",
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    if username and password:
        client.username_pw_set(username, password)
    client.reconnect_delay_set(min_delay=1, max_delay=60)
    return client


def reason_code_value(rc) -> int:
    """Normaliza ReasonCode/int de paho a int."""
    value = getattr(rc, "value", rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def is_failure(rc) -> bool:
    failure = getattr(rc, "is_failure", None)
    if failure is not None:
        return bool(failure)
    return reason_code_value(rc) != 0


def stop_client(client) -> None:
    """Desconecta y detiene el hilo de red; los errores solo se registran."""
    try:
        client.disconnect()
    except Exception as e:
        logger.warning("[MQTT] Disconnect error: %s", e)
    try:
        client.loop_stop()
    except Exception as e:
        logger.warning("[MQTT] Loop stop error: %s", e)
