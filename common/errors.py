"""Taxonomía de errores compartida por nodo y servidor.

PublishOutcome no es una excepción: publicar nunca lanza, devuelve
un valor (ver common.mqtt).
"""

from __future__ import annotations


class SyncError(Exception):
    """Base de todos los errores del protocolo de sincronización."""


class DiscoveryError(SyncError):
    """No se pudo localizar el broker."""


class DiscoveryTimeout(DiscoveryError):
    """La resolución del broker excedió su timeout."""


class ConnectError(SyncError):
    """El broker rechazó la conexión o no respondió a tiempo."""


class SubscribeError(SyncError):
    """Suscripción rechazada o intentada sin conexión."""


class StorageWriteError(SyncError):
    """Fallo de escritura distinto de una violación de unicidad.

    El lote completo se revierte.
    """


class LedgerCorruptionError(SyncError):
    """El contador de secuencia del nodo falta o es inconsistente."""


class ChecksumMismatch(SyncError):
    """El checksum de una respuesta no coincide con sus dataPoints."""

    def __init__(self, request_id: str, expected: str, received: str):
        super().__init__(
            f"checksum mismatch for {request_id}: expected={expected} received={received}"
        )
        self.request_id = request_id
        self.expected = expected
        self.received = received


class ProtocolError(SyncError):
    """Mensaje malformado o que no cumple el contrato."""
