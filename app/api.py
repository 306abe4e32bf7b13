"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.schemas import ErrorCode, IngestOutcome
from datastore.audit_log import AuditLog, build_default_audit_log
from datastore.key_store import KeyStore, build_default_key_store
from models.records import Principal
from services.ingestion import IngestionCoordinator, build_default_coordinator

router = APIRouter()


def get_coordinator() -> IngestionCoordinator:
    return build_default_coordinator()


def get_key_store() -> KeyStore:
    return build_default_key_store()


def get_audit_log() -> AuditLog:
    return build_default_audit_log()


def get_principal(
    apikey: Optional[str] = Query(None, description="Plain API key as flashed on the device."),
    x_api_key: Optional[str] = Header(None),
    key_store: KeyStore = Depends(get_key_store),
    audit_log: AuditLog = Depends(get_audit_log),
) -> Optional[Principal]:
    principal = key_store.authenticate(apikey or x_api_key)
    if principal is None:
        audit_log.record("error-unauthorized", False, "Unauthorized request for action=push")
    return principal


@router.post(
    "/push",
    response_model=IngestOutcome,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    summary="Store one JSON reading in the sensor's monthly CSV file.",
)
async def push_reading(
    request: Request,
    sensor_id: str = Query("", alias="sensorID", description="Target sensor identifier."),
    principal: Optional[Principal] = Depends(get_principal),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    if principal is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"ok": False, "error": ErrorCode.unauthorized.value},
        )

    body = await request.body()
    outcome = await run_in_threadpool(coordinator.ingest, principal, sensor_id, body)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_payload())


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "POST readings to /push?sensorID=<id>&apikey=<key>."}
