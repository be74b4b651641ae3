from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from fees.api.routers import bills, orchestration
from fees.bootstrap import build_context
from fees.infra.audit import AuditMiddleware
from fees.infra.db import check_db_ready, create_schema
from fees.infra.logging_setup import configure_logging

AUTO_CREATE_SCHEMA = os.getenv("FEES_AUTO_CREATE_SCHEMA", "0").strip().lower() in {"1", "true", "yes", "on"}

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    if AUTO_CREATE_SCHEMA:
        create_schema()
        logger.info("database schema ensured")

    context = build_context()
    app.state.context = context
    await context.start()
    logger.info("fees API started")

    yield

    await context.stop()
    app.state.context = None
    logger.info("fees API shut down")


app = FastAPI(
    title="fees",
    description="Bill lifecycle API with a durable per-bill orchestrator.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)

app.include_router(bills.router, tags=["bills"])
app.include_router(orchestration.router, tags=["orchestration"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
