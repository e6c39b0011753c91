"""SQL helpers para node_sequence_info y node_sync_status. No business logic."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import text


def get_sequence_info(conn, node_id: str) -> Optional[dict]:
    row = conn.execute(
        text("SELECT * FROM node_sequence_info WHERE node_id = :node_id"),
        {"node_id": node_id},
    ).mappings().first()
    return dict(row) if row else None


def advance_sequence_info(conn, node_id: str, end_sequence: int, max_sequence: int, now: str) -> None:
    """Upsert monotónico: last y max solo avanzan; max >= last siempre."""
    conn.execute(
        text(
            """
            INSERT INTO node_sequence_info (node_id, last_sequence, max_sequence, updated_at)
            VALUES (:node_id, :end_seq, MAX(:end_seq, :max_seq), :now)
            ON CONFLICT(node_id) DO UPDATE SET
                last_sequence = MAX(node_sequence_info.last_sequence, excluded.last_sequence),
                max_sequence = MAX(
                    node_sequence_info.max_sequence,
                    excluded.max_sequence,
                    node_sequence_info.last_sequence,
                    excluded.last_sequence
                ),
                updated_at = excluded.updated_at
            """
        ),
        {
            "node_id": node_id,
            "end_seq": max(end_sequence, 0),
            "max_seq": max(max_sequence, 0),
            "now": now,
        },
    )


def raise_max_sequence(conn, node_id: str, max_sequence: int, now: str) -> bool:
    """Sube max_sequence de una fila EXISTENTE; nunca crea filas."""
    result = conn.execute(
        text(
            """
            UPDATE node_sequence_info
            SET max_sequence = :max_seq, updated_at = :now
            WHERE node_id = :node_id AND max_sequence < :max_seq
            """
        ),
        {"node_id": node_id, "max_seq": max_sequence, "now": now},
    )
    return result.rowcount == 1


def set_sync_status(conn, node_id: str, status: str, now: str) -> None:
    conn.execute(
        text(
            """
            INSERT INTO node_sync_status (node_id, sync_status, last_seen_timestamp)
            VALUES (:node_id, :status, :now)
            ON CONFLICT(node_id) DO UPDATE SET
                sync_status = excluded.sync_status,
                last_seen_timestamp = excluded.last_seen_timestamp
            """
        ),
        {"node_id": node_id, "status": status, "now": now},
    )


def touch_last_seen(conn, node_id: str, now: str) -> None:
    conn.execute(
        text(
            """
            INSERT INTO node_sync_status (node_id, sync_status, last_seen_timestamp)
            VALUES (:node_id, 'connected', :now)
            ON CONFLICT(node_id) DO UPDATE SET last_seen_timestamp = excluded.last_seen_timestamp
            """
        ),
        {"node_id": node_id, "now": now},
    )


def touch_last_sync(conn, node_id: str, now: str) -> None:
    conn.execute(
        text(
            """
            INSERT INTO node_sync_status (node_id, sync_status, last_seen_timestamp, last_sync_timestamp)
            VALUES (:node_id, 'connected', :now, :now)
            ON CONFLICT(node_id) DO UPDATE SET
                last_sync_timestamp = excluded.last_sync_timestamp,
                last_seen_timestamp = excluded.last_seen_timestamp
            """
        ),
        {"node_id": node_id, "now": now},
    )


def list_connected_nodes(conn) -> list[dict]:
    """Nodos conectados con su progreso (NULL si aún no hay NodeSequenceInfo)."""
    rows = conn.execute(
        text(
            """
            SELECT s.node_id, i.last_sequence, i.max_sequence
            FROM node_sync_status s
            LEFT JOIN node_sequence_info i ON i.node_id = s.node_id
            WHERE s.sync_status = 'connected'
            ORDER BY s.node_id
            """
        )
    ).mappings().all()
    return [dict(r) for r in rows]


def list_nodes(conn) -> list[dict]:
    rows = conn.execute(
        text(
            """
            SELECT s.node_id, s.sync_status, s.last_seen_timestamp, s.last_sync_timestamp,
                   i.last_sequence, i.max_sequence, i.updated_at
            FROM node_sync_status s
            LEFT JOIN node_sequence_info i ON i.node_id = s.node_id
            ORDER BY s.node_id
            """
        )
    ).mappings().all()
    return [dict(r) for r in rows]
