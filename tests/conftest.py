"""Fixtures y dobles de prueba compartidos."""

import json
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest
from sqlalchemy import text

from common.db import Database, create_sqlite_engine
from common.mqtt import PublishOutcome
from common.protocol import encode_message
from node_agent.ledger import SequenceLedger
from node_agent.storage import ensure_node_schema
from sync_service.config import SyncConfig
from sync_service.schema import ensure_schema


# =============================================================================
# DOBLES DE TRANSPORTE
# =============================================================================

class FakePublisher:
    """Publisher en memoria; registra lo publicado como JSON decodificado."""

    def __init__(self):
        self.published: List[tuple] = []
        self.fail_reason: Optional[str] = None

    async def publish(self, topic: str, message: Any, qos: int = 1, retain: bool = False) -> PublishOutcome:
        if self.fail_reason:
            return PublishOutcome(False, self.fail_reason)
        payload = message if isinstance(message, (bytes, str)) else encode_message(message)
        self.published.append((topic, json.loads(payload), qos, retain))
        return PublishOutcome(True)

    def on_topic(self, topic: str) -> List[dict]:
        return [body for t, body, _, _ in self.published if t == topic]


class FakeSession(FakePublisher):
    """Sesión de broker del servidor sin red."""

    def __init__(self):
        super().__init__()
        self.handler = None
        self.started = False

    def set_message_handler(self, handler):
        self.handler = handler

    async def start(self, timeout: float = 10.0) -> bool:
        self.started = True
        return True

    async def stop(self) -> None:
        self.started = False

    def health_check(self) -> dict:
        return {"connected": self.started}


class FakeReason:
    def __init__(self, value: int = 0, failure: bool = False):
        self.value = value
        self.is_failure = failure


class FakePublishInfo:
    rc = 0

    def wait_for_publish(self, timeout=None):
        return None

    def is_published(self) -> bool:
        return True


class FakeMQTTClient:
    """Imita la API de paho-mqtt 2.x usada por ConnectionManager."""

    def __init__(self, accept: bool = True, respond: bool = True, refuse_subscribe: bool = False):
        self.accept = accept
        self.respond = respond
        self.refuse_subscribe = refuse_subscribe
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_subscribe = None
        self.will = None
        self.host = None
        self.subscriptions: List[str] = []
        self.published: List[tuple] = []
        self.stopped = False
        self.disconnected = False
        self._mid = 0

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self.will = (topic, payload, qos, retain)

    def connect_async(self, host, port, keepalive=60):
        self.host = (host, port)

    def loop_start(self):
        if self.respond:
            rc = FakeReason(0) if self.accept else FakeReason(5, failure=True)
            self.on_connect(self, None, {}, rc, None)

    def loop_stop(self):
        self.stopped = True

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topic, qos=0):
        self._mid += 1
        self.subscriptions.append(topic)
        if self.on_subscribe is not None:
            granted = FakeReason(128, failure=True) if self.refuse_subscribe else FakeReason(qos)
            self.on_subscribe(self, None, self._mid, [granted], None)
        return 0, self._mid

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return FakePublishInfo()

    def deliver(self, topic: str, payload: bytes):
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def drop(self):
        self.on_disconnect(self, None, {}, FakeReason(7, failure=True), None)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def server_db(tmp_path) -> Database:
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'server.db'}")
    ensure_schema(engine)
    yield Database(engine)
    engine.dispose()


@pytest.fixture
def node_db(tmp_path) -> Database:
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'node.db'}")
    ensure_node_schema(engine)
    yield Database(engine)
    engine.dispose()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(node_stagger_seconds=0)


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


def seed_node_readings(engine, node_id: str, count: int) -> None:
    """Inserta `count` lecturas numeradas por el ledger en una transacción."""
    with engine.begin() as conn:
        exists = conn.execute(text("SELECT COUNT(*) FROM sequence_tracker")).scalar_one()
        if not exists:
            conn.execute(text("INSERT INTO sequence_tracker (key, value) VALUES ('last_sequence_id', 0)"))
        for i in range(count):
            seq = SequenceLedger.allocate(conn)
            conn.execute(
                text(
                    """
                    INSERT INTO readings
                        (sequence_id, node_id, sensor_id, sensor_type, reading_type,
                         value, timestamp, created_at)
                    VALUES (:seq, :node, 't1', 'aht10', 'temperature', :value, :ts, :ts)
                    """
                ),
                {
                    "seq": seq,
                    "node": node_id,
                    "value": 20.0 + (seq % 50) / 10,
                    "ts": f"2026-01-01T00:{seq // 60 % 60:02d}:{seq % 60:02d}.{seq:06d}Z",
                },
            )


def set_node_status(engine, node_id: str, status: str = "connected") -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO node_sync_status (node_id, sync_status, last_seen_timestamp) "
                "VALUES (:n, :s, '2026-01-01T00:00:00+00:00') "
                "ON CONFLICT(node_id) DO UPDATE SET sync_status = excluded.sync_status"
            ),
            {"n": node_id, "s": status},
        )


def set_sequence_info(engine, node_id: str, last: int, maximum: int) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO node_sequence_info (node_id, last_sequence, max_sequence, updated_at) "
                "VALUES (:n, :l, :m, '2026-01-01T00:00:00+00:00') "
                "ON CONFLICT(node_id) DO UPDATE SET last_sequence = :l, max_sequence = :m"
            ),
            {"n": node_id, "l": last, "m": maximum},
        )


def fetch_request(engine, request_id: str) -> Optional[dict]:
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT * FROM history_requests WHERE request_id = :r"), {"r": request_id}
        ).mappings().first()
    return dict(row) if row else None


def count_rows(engine, table: str, where: str = "1=1", **params) -> int:
    with engine.connect() as conn:
        return int(conn.execute(text(f"SELECT COUNT(*) FROM {table} WHERE {where}"), params).scalar_one())
