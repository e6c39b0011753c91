"""ConnectionManager: sesión MQTT del nodo con descubrimiento y backoff.

Estados:
    disconnected → discovering → connecting → connected → disconnected

Descubrimiento y conexión tienen timeouts propios (10 s por defecto),
independientes de la maquinaria de reintentos de paho. Tras un fallo se
programa un reintento a min(cap, 2^intentos) minutos: 1, 2, 4, 8, 16, 30.

Los callbacks de paho llegan desde su hilo de red y se re-despachan al
event loop con call_soon_threadsafe: el estado solo se muta en el loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import paho.mqtt.client as mqtt
from pydantic import BaseModel

from common.config import Settings
from common.errors import ConnectError, DiscoveryError, SubscribeError
from common.mqtt import PublishOutcome, build_client, is_failure, reason_code_value, stop_client
from common.protocol import encode_message
from common.timeutil import utc_now

from .discovery import BrokerResolver, discover

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Optional[Awaitable[None]]]
ConnectedCallback = Callable[[], Awaitable[None]]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    broker_address: Optional[str] = None
    broker_port: Optional[int] = None
    reconnection_attempts: int = 0
    last_connection_time: Optional[datetime] = None
    subscribed_topics: set[str] = field(default_factory=set)


@dataclass
class ConnectionConfig:
    client_id: str
    username: Optional[str] = None
    password: Optional[str] = None
    discovery_timeout: float = 10.0
    connect_timeout: float = 10.0
    backoff_cap_minutes: int = 30
    publish_ack_timeout: float = 10.0
    keepalive: int = 60
    will_topic: Optional[str] = None
    will_payload: Optional[bytes] = None

    @classmethod
    def from_settings(cls, settings: Settings, client_id: str, **overrides) -> "ConnectionConfig":
        values = dict(
            client_id=client_id,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            discovery_timeout=settings.discovery_timeout,
            connect_timeout=settings.connect_timeout,
            backoff_cap_minutes=settings.backoff_cap_minutes,
            publish_ack_timeout=settings.publish_ack_timeout,
        )
        values.update(overrides)
        return cls(**values)


def backoff_delay_minutes(attempts: int, cap_minutes: int) -> int:
    return min(cap_minutes, 2 ** attempts)


def _default_client_factory(config: ConnectionConfig) -> mqtt.Client:
    return build_client(config.client_id, config.username, config.password)


class ConnectionManager:
    """Dueño exclusivo del ConnectionState del nodo."""

    def __init__(
        self,
        resolver: BrokerResolver,
        config: ConnectionConfig,
        control_topics: tuple[str, ...] = (),
        client_factory: Callable[[ConnectionConfig], Any] = _default_client_factory,
    ):
        self._resolver = resolver
        self._config = config
        self._control_topics = control_topics
        self._client_factory = client_factory

        self._state = ConnectionState()
        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connect_future: Optional[asyncio.Future] = None
        self._suback_futures: dict[int, asyncio.Future] = {}
        self._wanted_topics: dict[str, int] = {}
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._scheduled_retry_delay: Optional[float] = None
        self._message_handler: Optional[MessageHandler] = None
        self._connected_callbacks: list[ConnectedCallback] = []
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Copia del estado; no se puede mutar desde fuera."""
        return replace(self._state, subscribed_topics=set(self._state.subscribed_topics))

    @property
    def is_connected(self) -> bool:
        return self._state.status is ConnectionStatus.CONNECTED

    @property
    def scheduled_retry_delay(self) -> Optional[float]:
        """Segundos hasta el reintento programado, o None."""
        return self._scheduled_retry_delay if self._retry_handle is not None else None

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def add_connected_callback(self, callback: ConnectedCallback) -> None:
        self._connected_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        self._stopped = False
        return await self.connect()

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_retry()
        await self._teardown_client()
        self._state.status = ConnectionStatus.DISCONNECTED
        for task in list(self._tasks):
            task.cancel()
        logger.info("[MQTT] Connection manager stopped")

    async def reconnect(self) -> bool:
        """Reconexión explícita: descarta la sesión actual y reintenta ya."""
        await self._teardown_client()
        self._state.status = ConnectionStatus.DISCONNECTED
        return await self.connect()

    async def connect(self) -> bool:
        """Un intento completo de descubrimiento + conexión.

        Nunca lanza: en caso de fallo programa el siguiente reintento.
        """
        self._loop = asyncio.get_running_loop()
        self._cancel_retry()
        if self._state.status in (ConnectionStatus.DISCOVERING, ConnectionStatus.CONNECTING):
            logger.debug("[MQTT] Connect already in progress")
            return False
        if self.is_connected:
            return True

        self._state.status = ConnectionStatus.DISCOVERING
        try:
            host, port = await discover(self._resolver, self._config.discovery_timeout)
            self._state.broker_address = host
            self._state.broker_port = port
            self._state.status = ConnectionStatus.CONNECTING
            await self._open_session(host, port)
            await self._subscribe_all()
        except (DiscoveryError, ConnectError) as e:
            logger.warning("[MQTT] Connection attempt failed: %s", e)
            await self._teardown_client()
            self._state.status = ConnectionStatus.DISCONNECTED
            self._schedule_retry()
            return False

        self._state.status = ConnectionStatus.CONNECTED
        self._state.reconnection_attempts = 0
        self._state.last_connection_time = utc_now()
        logger.info(
            "[MQTT] Connected to %s:%s", self._state.broker_address, self._state.broker_port
        )

        for callback in self._connected_callbacks:
            try:
                await callback()
            except Exception:
                logger.exception("[MQTT] Connected callback failed")
        return True

    # ------------------------------------------------------------------
    # Operaciones
    # ------------------------------------------------------------------

    async def subscribe(self, topic: str, qos: int = 1) -> None:
        """Suscribe un topic; falla si no hay conexión.

        Raises:
            SubscribeError: sin conexión o SUBACK rechazado.
        """
        if not self.is_connected:
            raise SubscribeError(f"cannot subscribe to {topic}: not connected")
        await self._subscribe(topic, qos)
        self._wanted_topics[topic] = qos

    async def publish(
        self,
        topic: str,
        message: Union[bytes, str, dict, BaseModel],
        qos: int = 1,
        retain: bool = False,
    ) -> PublishOutcome:
        """Publica sin lanzar nunca."""
        client = self._client
        if not self.is_connected or client is None:
            return PublishOutcome(False, "not connected")

        if isinstance(message, (bytes, str)):
            payload = message
        else:
            payload = encode_message(message)

        try:
            info = client.publish(topic, payload, qos=qos, retain=retain)
        except (ValueError, TypeError, OSError) as e:
            logger.warning("[MQTT] Publish to %s failed: %s", topic, e)
            return PublishOutcome(False, str(e))

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            reason = mqtt.error_string(info.rc)
            logger.warning("[MQTT] Publish to %s rejected: %s", topic, reason)
            return PublishOutcome(False, reason)

        if qos > 0:
            try:
                await asyncio.to_thread(info.wait_for_publish, self._config.publish_ack_timeout)
            except (RuntimeError, ValueError) as e:
                logger.warning("[MQTT] Publish ack for %s failed: %s", topic, e)
                return PublishOutcome(False, str(e))
            if not info.is_published():
                logger.warning("[MQTT] Publish ack timeout for %s", topic)
                return PublishOutcome(False, "publish ack timeout")

        return PublishOutcome(True)

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------

    async def _open_session(self, host: str, port: int) -> None:
        loop = self._loop
        client = self._client_factory(self._config)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        if self._config.will_topic and self._config.will_payload is not None:
            client.will_set(self._config.will_topic, self._config.will_payload, qos=1, retain=True)

        self._connect_future = loop.create_future()
        self._client = client
        logger.info("[MQTT] Connecting to %s:%d", host, port)
        try:
            client.connect_async(host, port, keepalive=self._config.keepalive)
            client.loop_start()
        except (OSError, ValueError) as e:
            raise ConnectError(f"connect to {host}:{port} failed: {e}") from e

        try:
            await asyncio.wait_for(self._connect_future, timeout=self._config.connect_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectError(
                f"connect to {host}:{port} timed out after {self._config.connect_timeout:.0f}s"
            ) from e
        finally:
            self._connect_future = None

    async def _subscribe_all(self) -> None:
        """Suscribe los topics de control y los pedidos por el llamador.

        Raises:
            ConnectError: un topic de control no quedó activo; sin él el
                nodo no recibe peticiones y no puede considerarse conectado.
        """
        self._state.subscribed_topics.clear()
        for topic in self._control_topics:
            try:
                await self._subscribe(topic, 1)
            except SubscribeError as e:
                raise ConnectError(f"control subscription failed: {e}") from e
        for topic, qos in self._wanted_topics.items():
            if topic in self._control_topics:
                continue
            try:
                await self._subscribe(topic, qos)
            except SubscribeError as e:
                logger.error("[MQTT] Subscribe to %s failed: %s", topic, e)

    async def _subscribe(self, topic: str, qos: int) -> None:
        client = self._client
        if client is None:
            raise SubscribeError(f"cannot subscribe to {topic}: no session")
        result, mid = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeError(f"subscribe to {topic} rejected: {mqtt.error_string(result)}")

        future = self._loop.create_future()
        self._suback_futures[mid] = future
        try:
            reason_codes = await asyncio.wait_for(future, timeout=self._config.connect_timeout)
        except asyncio.TimeoutError as e:
            raise SubscribeError(f"no SUBACK for {topic}") from e
        finally:
            self._suback_futures.pop(mid, None)

        if any(is_failure(rc) for rc in reason_codes):
            raise SubscribeError(f"broker refused subscription to {topic}")
        self._state.subscribed_topics.add(topic)
        logger.info("[MQTT] Subscribed to %s", topic)

    def _schedule_retry(self) -> None:
        if self._stopped or self._loop is None:
            return
        minutes = backoff_delay_minutes(
            self._state.reconnection_attempts, self._config.backoff_cap_minutes
        )
        self._state.reconnection_attempts += 1
        self._scheduled_retry_delay = minutes * 60.0
        logger.info(
            "[MQTT] Retrying in %d min (attempt %d)", minutes, self._state.reconnection_attempts
        )
        self._retry_handle = self._loop.call_later(self._scheduled_retry_delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        self._spawn(self.connect())

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _teardown_client(self) -> None:
        client, self._client = self._client, None
        for future in self._suback_futures.values():
            if not future.done():
                future.set_exception(SubscribeError("connection closed"))
        self._suback_futures.clear()
        self._state.subscribed_topics.clear()
        if client is not None:
            await asyncio.to_thread(stop_client, client)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[MQTT] Background task failed", exc_info=task.exception())

    def _threadsafe(self, callback, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    # Callbacks de paho (hilo de red)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._threadsafe(self._handle_connect, client, reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._threadsafe(self._handle_disconnect, client, reason_code)

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties=None):
        self._threadsafe(self._handle_suback, mid, list(reason_codes))

    def _on_message(self, client, userdata, msg):
        self._threadsafe(self._dispatch_message, msg.topic, msg.payload)

    # Handlers en el loop

    def _handle_connect(self, client, reason_code) -> None:
        if client is not self._client:
            return
        future = self._connect_future
        if future is None or future.done():
            return
        if is_failure(reason_code):
            future.set_exception(
                ConnectError(f"broker refused connection: rc={reason_code_value(reason_code)}")
            )
        else:
            future.set_result(True)

    def _handle_disconnect(self, client, reason_code) -> None:
        if client is not self._client:
            return
        future = self._connect_future
        if future is not None and not future.done():
            future.set_exception(ConnectError("disconnected while connecting"))
            return
        if self._state.status is not ConnectionStatus.CONNECTED:
            return
        logger.warning("[MQTT] Disconnected (rc=%d)", reason_code_value(reason_code))
        self._state.status = ConnectionStatus.DISCONNECTED
        if not self._stopped:
            self._spawn(self.reconnect())

    def _handle_suback(self, mid: int, reason_codes: list) -> None:
        future = self._suback_futures.get(mid)
        if future is not None and not future.done():
            future.set_result(reason_codes)

    def _dispatch_message(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
        except Exception:
            logger.exception("[MQTT] Message handler failed topic=%s", topic)
            return
        if inspect.isawaitable(result):
            self._spawn(result)
