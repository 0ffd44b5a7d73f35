from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, Response

from eduauth.api.routers import access, auth
from eduauth.infra.db import check_db_ready
from eduauth.logging import get_logger, set_correlation_id
from eduauth.services.bootstrap_service import BootstrapService

SEED_ON_STARTUP = os.getenv("AUTH_SEED_ON_STARTUP", "false").lower() in {"1", "true", "yes", "on"}

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    if SEED_ON_STARTUP:
        BootstrapService().seed()
    yield


app = FastAPI(
    title="eduauth",
    description="Identity and access control for institutional records.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def correlation_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = cid
    return response


app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(access.router, prefix="/api/access", tags=["access"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        logger.warning("readiness_check_failed", checks=checks)
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
