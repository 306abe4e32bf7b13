from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from datastore.audit_log import build_default_audit_log
from datastore.key_store import build_default_key_store
from logging_config import configure_logging
from services.ingestion import build_default_coordinator


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    build_default_key_store()
    build_default_coordinator()
    try:
        yield
    finally:
        build_default_coordinator.cache_clear()
        build_default_audit_log.cache_clear()
        build_default_key_store.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Sensor Telemetry Logger",
        description="Stores pushed ESP sensor readings in per-sensor monthly CSV files.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
