from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HistoryPullIn(_CamelModel):
    node_id: str = Field(..., alias="nodeId", min_length=1)
    start_sequence: Optional[int] = Field(default=None, alias="startSequence", ge=0)
    end_sequence: Optional[int] = Field(default=None, alias="endSequence", ge=0)
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")


class HistoryPullOut(BaseModel):
    success: bool
    requestId: str
    reason: Optional[str] = None


class SyncSettingsIn(_CamelModel):
    interval_seconds: Optional[float] = Field(default=None, alias="intervalSeconds")
    batch_size: Optional[int] = Field(default=None, alias="batchSize")


class SyncSettingsOut(BaseModel):
    intervalSeconds: float
    batchSize: int


class NodeSequenceOut(BaseModel):
    node_id: str
    last_sequence: int
    max_sequence: int
    updated_at: str


class HistoryRequestRow(BaseModel):
    request_id: str
    node_id: str
    start_sequence: Optional[int] = None
    end_sequence: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: str
    request_time: str
    complete_time: Optional[str] = None
    record_count: Optional[int] = None


class NodeStatusRow(BaseModel):
    node_id: str
    sync_status: str
    last_seen_timestamp: Optional[str] = None
    last_sync_timestamp: Optional[str] = None
    last_sequence: Optional[int] = None
    max_sequence: Optional[int] = None
    updated_at: Optional[str] = None


class SyncStatusOut(BaseModel):
    nodes: List[NodeStatusRow] = Field(default_factory=list)
    settings: SyncSettingsOut
    pendingRequests: int
    recentRequests: List[HistoryRequestRow] = Field(default_factory=list)
    broker: dict = Field(default_factory=dict)


class CancelPendingOut(BaseModel):
    cancelled: int


class SensorDataRow(BaseModel):
    node_id: str
    sensor_id: str
    sensor_type: str
    reading_type: str
    value: float
    timestamp: str
    sequence_id: Optional[int] = None
