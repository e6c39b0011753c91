"""Superficie de lectura HTTP del servicio de sincronización."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request

from common.config import get_settings
from common.errors import ProtocolError

from .schemas import (
    CancelPendingOut,
    HistoryPullIn,
    HistoryPullOut,
    HistoryRequestRow,
    NodeSequenceOut,
    SensorDataRow,
    SyncSettingsIn,
    SyncSettingsOut,
    SyncStatusOut,
)
from .service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request) -> SyncService:
    return request.app.state.sync_service


@router.get("/health", tags=["health"])
def health():
    """Chequeo de vida: ok mientras el proceso responda."""
    return {"status": "ok"}


@router.get("/sync/status", response_model=SyncStatusOut, tags=["sync"])
async def sync_status(service: SyncService = Depends(get_service)):
    return await service.status_snapshot()


@router.get("/nodes/{node_id}/sequence", response_model=NodeSequenceOut, tags=["sync"])
async def node_sequence(node_id: str, service: SyncService = Depends(get_service)):
    info = await service.get_node_sequence(node_id)
    if info is None:
        raise HTTPException(status_code=404, detail=f"no sequence info for {node_id}")
    return info


@router.get("/history-requests", response_model=List[HistoryRequestRow], tags=["history"])
async def list_history_requests(
    limit: int = Query(10, ge=1, le=1000),
    node_id: Optional[str] = None,
    service: SyncService = Depends(get_service),
):
    return await service.list_requests(limit, node_id)


@router.post("/history-requests", response_model=HistoryPullOut, tags=["history"])
async def pull_history(body: HistoryPullIn, service: SyncService = Depends(get_service)):
    """Petición fuera de banda por rango de secuencia o de tiempo."""
    try:
        issued = await service.requests.request_history(
            body.node_id,
            start_sequence=body.start_sequence,
            end_sequence=body.end_sequence,
            start_time=body.start_time,
            end_time=body.end_time,
        )
    except ProtocolError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("[API] Manual history pull %s for %s", issued.request_id, body.node_id)
    return HistoryPullOut(success=issued.sent, requestId=issued.request_id, reason=issued.reason)


@router.post("/history-requests/cancel-pending", response_model=CancelPendingOut, tags=["history"])
async def cancel_pending(service: SyncService = Depends(get_service)):
    return CancelPendingOut(cancelled=await service.requests.cancel_all_pending())


@router.get("/sync/settings", response_model=SyncSettingsOut, tags=["sync"])
async def get_sync_settings(service: SyncService = Depends(get_service)):
    return (await service.scheduler.get_settings()).to_dict()


@router.put("/sync/settings", response_model=SyncSettingsOut, tags=["sync"])
async def put_sync_settings(body: SyncSettingsIn, service: SyncService = Depends(get_service)):
    try:
        settings = await service.scheduler.update_settings(
            interval_seconds=body.interval_seconds, batch_size=body.batch_size
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return settings.to_dict()


@router.get("/sensor-data", response_model=List[SensorDataRow], tags=["data"])
async def sensor_data(
    node_id: Optional[str] = None,
    sensor_id: Optional[str] = None,
    reading_type: Optional[str] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    limit: int = Query(1000, ge=1, le=10000),
    service: SyncService = Depends(get_service),
):
    return await service.query_sensor_data(
        node_id=node_id,
        sensor_id=sensor_id,
        reading_type=reading_type,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
    )


def create_app(service: SyncService, manage_lifecycle: bool = True) -> FastAPI:
    """App FastAPI sobre un SyncService.

    Con manage_lifecycle=True el lifespan arranca y detiene el servicio
    (sesión MQTT + scheduler); si no, solo prepara el esquema.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        else:
            await service.prepare()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()

    app = FastAPI(title="Undergrowth Sync Service", version="0.1.0", lifespan=lifespan)
    app.state.sync_service = service
    app.include_router(router)
    return app


def create_default_app() -> FastAPI:
    """Factory para `uvicorn --factory sync_service.api:create_default_app`."""
    return create_app(SyncService.from_settings(get_settings()))
