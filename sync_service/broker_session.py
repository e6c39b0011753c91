"""Sesión MQTT del servidor.

Más simple que el ConnectionManager del nodo: broker estático y
reconexión delegada en paho (reconnect_delay_set). Las suscripciones se
renuevan en cada on_connect.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import paho.mqtt.client as mqtt
from pydantic import BaseModel

from common import topics
from common.mqtt import PublishOutcome, build_client, is_failure, reason_code_value, stop_client
from common.protocol import encode_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Optional[Awaitable[None]]]


class BrokerSession:
    def __init__(
        self,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "undergrowth-sync",
        subscriptions: tuple[str, ...] = topics.SERVER_SUBSCRIPTIONS,
        publish_ack_timeout: float = 10.0,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.subscriptions = subscriptions
        self.publish_ack_timeout = publish_ack_timeout
        self._client_factory = client_factory or (
            lambda: build_client(client_id, username, password)
        )

        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = asyncio.Event()
        self._message_handler: Optional[MessageHandler] = None
        self._tasks: set[asyncio.Task] = set()
        self._stats = {
            "messages_received": 0,
            "messages_published": 0,
            "publish_failed": 0,
            "handler_errors": 0,
            "reconnects": 0,
        }

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    def health_check(self) -> dict:
        return {
            "connected": self.is_connected,
            "broker": f"{self.broker_host}:{self.broker_port}",
            **self.stats,
        }

    async def start(self, timeout: float = 10.0) -> bool:
        """Conecta y espera la primera sesión hasta `timeout` segundos.

        Si no conecta a tiempo devuelve False; paho sigue reintentando en
        segundo plano.
        """
        self._loop = asyncio.get_running_loop()
        client = self._client_factory()
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._client = client

        logger.info("[MQTT] Connecting to %s:%d", self.broker_host, self.broker_port)
        try:
            client.connect_async(self.broker_host, self.broker_port, keepalive=60)
            client.loop_start()
        except (OSError, ValueError) as e:
            logger.error("[MQTT] Connection failed: %s", e)
            return False

        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("[MQTT] Connection timeout, retrying in background")
            return False
        return True

    async def stop(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await asyncio.to_thread(stop_client, client)
        self._connected.clear()
        for task in list(self._tasks):
            task.cancel()
        logger.info("[MQTT] Broker session closed")

    async def publish(
        self,
        topic: str,
        message: Union[bytes, str, dict, BaseModel],
        qos: int = 1,
        retain: bool = False,
    ) -> PublishOutcome:
        client = self._client
        if client is None or not self.is_connected:
            self._stats["publish_failed"] += 1
            return PublishOutcome(False, "not connected")

        payload = message if isinstance(message, (bytes, str)) else encode_message(message)
        try:
            info = client.publish(topic, payload, qos=qos, retain=retain)
        except (ValueError, TypeError, OSError) as e:
            self._stats["publish_failed"] += 1
            return PublishOutcome(False, str(e))

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._stats["publish_failed"] += 1
            return PublishOutcome(False, mqtt.error_string(info.rc))

        if qos > 0:
            try:
                await asyncio.to_thread(info.wait_for_publish, self.publish_ack_timeout)
            except (RuntimeError, ValueError) as e:
                self._stats["publish_failed"] += 1
                return PublishOutcome(False, str(e))
            if not info.is_published():
                self._stats["publish_failed"] += 1
                return PublishOutcome(False, "publish ack timeout")

        self._stats["messages_published"] += 1
        return PublishOutcome(True)

    # Callbacks de paho (hilo de red)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if is_failure(reason_code):
            logger.error("[MQTT] Connection failed: rc=%d", reason_code_value(reason_code))
            return
        for topic in self.subscriptions:
            client.subscribe(topic, qos=topics.QOS_CONTROL)
            logger.info("[MQTT] Subscribed to %s", topic)
        self._threadsafe(self._mark_connected)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("[MQTT] Disconnected (rc=%d)", reason_code_value(reason_code))
        self._threadsafe(self._connected.clear)

    def _on_message(self, client, userdata, msg):
        self._threadsafe(self._dispatch, msg.topic, msg.payload)

    def _threadsafe(self, callback, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _mark_connected(self) -> None:
        if self._stats["messages_received"] or self._connected.is_set():
            self._stats["reconnects"] += 1
        self._connected.set()
        logger.info("[MQTT] Connected to broker")

    def _dispatch(self, topic: str, payload: bytes) -> None:
        self._stats["messages_received"] += 1
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
        except Exception:
            self._stats["handler_errors"] += 1
            logger.exception("[MQTT] Handler failed topic=%s", topic)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._stats["handler_errors"] += 1
            logger.error("[MQTT] Handler task failed", exc_info=task.exception())

