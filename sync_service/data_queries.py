"""SQL helpers para sensor_data. No business logic."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import text

from common.protocol import DataPoint


def insert_point(conn, node_id: str, point: DataPoint, received_at: str) -> bool:
    """Inserta una lectura; False si ya existía (conflicto de unicidad)."""
    result = conn.execute(
        text(
            """
            INSERT INTO sensor_data
                (node_id, sensor_id, sensor_type, reading_type, value, timestamp,
                 sequence_id, received_at)
            VALUES
                (:node_id, :sensor_id, :sensor_type, :reading_type, :value, :ts,
                 :seq, :received_at)
            ON CONFLICT(node_id, sensor_id, timestamp, reading_type) DO NOTHING
            """
        ),
        {
            "node_id": node_id,
            "sensor_id": point.sensor_id,
            "sensor_type": point.sensor_type,
            "reading_type": point.reading_type,
            "value": point.value,
            "ts": point.timestamp,
            "seq": point.sequence_id,
            "received_at": received_at,
        },
    )
    return result.rowcount == 1


def query_readings(
    conn,
    *,
    node_id: Optional[str] = None,
    sensor_id: Optional[str] = None,
    reading_type: Optional[str] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    limit: int = 1000,
) -> list[dict]:
    clauses = []
    params: dict = {"limit": limit}
    if node_id:
        clauses.append("node_id = :node_id")
        params["node_id"] = node_id
    if sensor_id:
        clauses.append("sensor_id = :sensor_id")
        params["sensor_id"] = sensor_id
    if reading_type:
        clauses.append("reading_type = :reading_type")
        params["reading_type"] = reading_type
    if start_time:
        clauses.append("timestamp >= :start_time")
        params["start_time"] = start_time
    if end_time:
        clauses.append("timestamp <= :end_time")
        params["end_time"] = end_time

    sql = (
        "SELECT node_id, sensor_id, sensor_type, reading_type, value, timestamp, sequence_id "
        "FROM sensor_data"
    )
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY timestamp DESC LIMIT :limit"
    return [dict(r) for r in conn.execute(text(sql), params).mappings().all()]
