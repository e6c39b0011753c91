"""Parámetros de ajuste del servicio de sincronización.

Los topes de pendientes, el tamaño de lote y el intervalo son constantes
operativas, no invariantes del protocolo: todo se lee del entorno. El
intervalo y el tamaño de lote vivos se guardan en sync_settings; aquí solo
están sus valores semilla.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class ChecksumPolicy(str, Enum):
    REJECT = "reject"  # fail closed: no se almacena, la petición sigue pending
    WARN = "warn"  # fail open: log de error y se almacena igual


@dataclass
class SyncConfig:
    """Configuración del scheduler, el protocolo y el GC."""
    global_pending_cap: int = 50
    node_pending_cap: int = 2
    default_interval_seconds: float = 60.0
    default_batch_size: int = 1000
    min_interval_seconds: float = 5.0
    max_batch_size: int = 10000
    node_stagger_seconds: float = 2.0
    request_timeout_seconds: float = 120.0
    stale_pending_hours: float = 24.0
    purge_days: float = 30.0
    checksum_policy: ChecksumPolicy = ChecksumPolicy.REJECT

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            global_pending_cap=int(os.getenv("SYNC_GLOBAL_PENDING_CAP", "50")),
            node_pending_cap=int(os.getenv("SYNC_NODE_PENDING_CAP", "2")),
            default_interval_seconds=float(os.getenv("SYNC_DEFAULT_INTERVAL_SECONDS", "60")),
            default_batch_size=int(os.getenv("SYNC_DEFAULT_BATCH_SIZE", "1000")),
            min_interval_seconds=float(os.getenv("SYNC_MIN_INTERVAL_SECONDS", "5")),
            max_batch_size=int(os.getenv("SYNC_MAX_BATCH_SIZE", "10000")),
            node_stagger_seconds=float(os.getenv("SYNC_NODE_STAGGER_SECONDS", "2")),
            request_timeout_seconds=float(os.getenv("SYNC_REQUEST_TIMEOUT_SECONDS", "120")),
            stale_pending_hours=float(os.getenv("SYNC_STALE_PENDING_HOURS", "24")),
            purge_days=float(os.getenv("SYNC_PURGE_DAYS", "30")),
            checksum_policy=ChecksumPolicy(os.getenv("SYNC_CHECKSUM_POLICY", "reject").lower()),
        )
