from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    return str(Path.cwd() / ".env")


def default_node_id() -> str:
    # Derivado de la MAC del hardware; estable entre reinicios.
    return f"ug-{uuid.getnode():012x}"


@dataclass(frozen=True)
class Settings:
    node_id: str
    node_db_url: str
    server_db_url: str

    mqtt_host: str
    mqtt_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_discovery_host: Optional[str]

    discovery_timeout: float
    connect_timeout: float
    backoff_cap_minutes: int
    publish_ack_timeout: float

    status_interval: float
    node_max_batch: int

    log_level: str


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("UG_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        node_id=os.getenv("UG_NODE_ID") or default_node_id(),
        node_db_url=os.getenv("UG_NODE_DB_URL", "sqlite:///undergrowth_node.db"),
        server_db_url=os.getenv("UG_SERVER_DB_URL", "sqlite:///undergrowth_server.db"),
        mqtt_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        mqtt_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        mqtt_discovery_host=os.getenv("MQTT_DISCOVERY_HOST") or None,
        discovery_timeout=float(os.getenv("MQTT_DISCOVERY_TIMEOUT", "10")),
        connect_timeout=float(os.getenv("MQTT_CONNECT_TIMEOUT", "10")),
        backoff_cap_minutes=int(os.getenv("MQTT_BACKOFF_CAP_MINUTES", "30")),
        publish_ack_timeout=float(os.getenv("MQTT_PUBLISH_ACK_TIMEOUT", "10")),
        status_interval=float(os.getenv("UG_STATUS_INTERVAL", "60")),
        node_max_batch=int(os.getenv("UG_NODE_MAX_BATCH", "1000")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
