"""Localización del broker.

Contrato: resolver (host, port) en un tiempo acotado o fallar. El
transporte concreto (mDNS, DNS, estático) es intercambiable.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional, Protocol

from common.errors import DiscoveryError, DiscoveryTimeout

logger = logging.getLogger(__name__)


class BrokerResolver(Protocol):
    async def resolve(self) -> tuple[str, int]:
        ...


class StaticBrokerResolver:
    """Broker configurado explícitamente (MQTT_BROKER_HOST/PORT)."""

    def __init__(self, host: str, port: int = 1883):
        self.host = host
        self.port = port

    async def resolve(self) -> tuple[str, int]:
        return self.host, self.port


class DnsBrokerResolver:
    """Resuelve un nombre de servicio (p.ej. mqtt.local) a una dirección."""

    def __init__(self, hostname: str, port: int = 1883):
        self.hostname = hostname
        self.port = port

    async def resolve(self) -> tuple[str, int]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                self.hostname, self.port, family=socket.AF_INET, type=socket.SOCK_STREAM
            )
        except OSError as e:
            raise DiscoveryError(f"cannot resolve {self.hostname}: {e}") from e
        if not infos:
            raise DiscoveryError(f"no address for {self.hostname}")
        address = infos[0][4][0]
        return address, self.port


async def discover(resolver: BrokerResolver, timeout: float) -> tuple[str, int]:
    """Resuelve el broker con timeout acotado.

    Raises:
        DiscoveryTimeout: si no hay respuesta en `timeout` segundos.
        DiscoveryError: si el resolver falla.
    """
    try:
        host, port = await asyncio.wait_for(resolver.resolve(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise DiscoveryTimeout(f"broker discovery timed out after {timeout:.0f}s") from e
    except DiscoveryError:
        raise
    except OSError as e:
        raise DiscoveryError(str(e)) from e
    logger.info("[MQTT] Broker discovered at %s:%d", host, port)
    return host, port


def resolver_from_settings(host: str, port: int, discovery_host: Optional[str] = None) -> BrokerResolver:
    if discovery_host:
        return DnsBrokerResolver(discovery_host, port)
    return StaticBrokerResolver(host, port)
