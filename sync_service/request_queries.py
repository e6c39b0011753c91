"""SQL helpers para history_requests.

Todas las transiciones de estado son compare-and-set sobre el estado
actual (WHERE status = 'pending'): el scheduler, el manejador de respuestas
y el GC comparten esta tabla y ninguno resucita una fila ya finalizada.
No business logic.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from sqlalchemy import text


class RequestStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def insert_request(
    conn,
    *,
    request_id: str,
    node_id: str,
    request_time: str,
    start_sequence: Optional[int] = None,
    end_sequence: Optional[int] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
) -> None:
    conn.execute(
        text(
            """
            INSERT INTO history_requests
                (request_id, node_id, start_sequence, end_sequence, start_time, end_time,
                 status, request_time)
            VALUES
                (:request_id, :node_id, :start_sequence, :end_sequence, :start_time, :end_time,
                 'pending', :request_time)
            """
        ),
        {
            "request_id": request_id,
            "node_id": node_id,
            "start_sequence": start_sequence,
            "end_sequence": end_sequence,
            "start_time": start_time,
            "end_time": end_time,
            "request_time": request_time,
        },
    )


def get_request(conn, request_id: str) -> Optional[dict]:
    row = conn.execute(
        text("SELECT * FROM history_requests WHERE request_id = :rid"),
        {"rid": request_id},
    ).mappings().first()
    return dict(row) if row else None


def mark_completed(conn, request_id: str, record_count: int, now: str) -> bool:
    result = conn.execute(
        text(
            """
            UPDATE history_requests
            SET status = 'completed', complete_time = :now, record_count = :count
            WHERE request_id = :rid AND status = 'pending'
            """
        ),
        {"rid": request_id, "now": now, "count": record_count},
    )
    return result.rowcount == 1


def mark_timeout(conn, request_id: str, now: str) -> bool:
    result = conn.execute(
        text(
            """
            UPDATE history_requests
            SET status = 'timeout', complete_time = :now
            WHERE request_id = :rid AND status = 'pending'
            """
        ),
        {"rid": request_id, "now": now},
    )
    return result.rowcount == 1


def record_late_count(conn, request_id: str, record_count: int) -> bool:
    """Anota registros recuperados de una respuesta tardía sin tocar el estado."""
    result = conn.execute(
        text(
            """
            UPDATE history_requests
            SET record_count = COALESCE(record_count, 0) + :count
            WHERE request_id = :rid AND status = 'timeout'
            """
        ),
        {"rid": request_id, "count": record_count},
    )
    return result.rowcount == 1


def count_pending(conn, node_id: Optional[str] = None) -> int:
    sql = "SELECT COUNT(*) FROM history_requests WHERE status = 'pending'"
    params: dict = {}
    if node_id is not None:
        sql += " AND node_id = :node_id"
        params["node_id"] = node_id
    return int(conn.execute(text(sql), params).scalar_one())


def pending_starts_at(conn, node_id: str, start_sequence: int) -> bool:
    row = conn.execute(
        text(
            """
            SELECT 1 FROM history_requests
            WHERE node_id = :node_id AND status = 'pending' AND start_sequence = :start
            LIMIT 1
            """
        ),
        {"node_id": node_id, "start": start_sequence},
    ).first()
    return row is not None


def list_recent(conn, limit: int = 10, node_id: Optional[str] = None) -> list[dict]:
    sql = "SELECT * FROM history_requests"
    params: dict = {"limit": limit}
    if node_id is not None:
        sql += " WHERE node_id = :node_id"
        params["node_id"] = node_id
    sql += " ORDER BY request_time DESC, rowid DESC LIMIT :limit"
    return [dict(r) for r in conn.execute(text(sql), params).mappings().all()]


def cancel_all_pending(conn, now: str) -> int:
    result = conn.execute(
        text(
            """
            UPDATE history_requests
            SET status = 'cancelled', complete_time = :now
            WHERE status = 'pending'
            """
        ),
        {"now": now},
    )
    return result.rowcount


def timeout_stale_pending(conn, cutoff: str, now: str) -> int:
    result = conn.execute(
        text(
            """
            UPDATE history_requests
            SET status = 'timeout', complete_time = :now
            WHERE status = 'pending' AND request_time < :cutoff
            """
        ),
        {"cutoff": cutoff, "now": now},
    )
    return result.rowcount


def purge_older_than(conn, cutoff: str) -> int:
    result = conn.execute(
        text("DELETE FROM history_requests WHERE request_time < :cutoff"),
        {"cutoff": cutoff},
    )
    return result.rowcount


def collapse_duplicate_pending(conn) -> int:
    """Deja como mucho una pendiente por nodo: la más reciente (request_time, luego rowid)."""
    result = conn.execute(
        text(
            """
            DELETE FROM history_requests
            WHERE status = 'pending'
              AND EXISTS (
                SELECT 1 FROM history_requests AS newer
                WHERE newer.status = 'pending'
                  AND newer.node_id = history_requests.node_id
                  AND (
                    newer.request_time > history_requests.request_time
                    OR (newer.request_time = history_requests.request_time
                        AND newer.rowid > history_requests.rowid)
                  )
              )
            """
        )
    )
    return result.rowcount
