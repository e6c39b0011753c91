from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """ISO-8601 UTC con microsegundos; ordenable lexicográficamente."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def reading_timestamp(dt: Optional[datetime] = None) -> str:
    """Timestamp de lectura con sufijo Z (formato de los nodos)."""
    dt = dt or utc_now()
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def epoch_ms() -> int:
    return int(time.time() * 1000)
