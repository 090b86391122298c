"""Relay HTTP entrypoint: routes, metrics and process wiring."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest
from pydantic import BaseModel

from .config import Settings, configure_logging, load_settings
from .limiter import RateLimiterRegistry
from .service import Availability, RateLimited, RelayService
from .share_store import create_default_store
from .share_store_base import ShareNotFound, ShareStore, StorageError
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

# Metrics
MET_SHARES_CREATED = Counter("relay_shares_created_total", "Shares stored")
MET_RETRIEVALS = Counter("relay_share_retrievals_total", "Share retrieval attempts", ["result"])
MET_CHECKS = Counter("relay_code_checks_total", "Code availability checks", ["result"])
MET_RATE_LIMITED = Counter("relay_rate_limited_total", "Requests rejected by the rate limiter")
MET_STORAGE_ERRORS = Counter("relay_storage_errors_total", "Requests failed by storage errors")
MET_LIMITERS = Gauge("relay_rate_limiters", "Client identities tracked by the rate limiter")

SWEEPER_STOP_TIMEOUT = 5.0

router = APIRouter()


class ShareRequest(BaseModel):
    code: str
    data: str
    expires_minutes: Optional[int] = None


def _client_identity(request: Request) -> str:
    """Return the rate-limit identity for the request's client."""
    settings: Settings = request.app.state.settings
    if settings.trust_forwarded_for:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",", 1)[0].strip()
    return (request.client and request.client.host) or "unknown"


def _validate_share_request(req: ShareRequest, settings: Settings) -> None:
    if not req.code or not req.data:
        raise HTTPException(status_code=400, detail="Missing code or data")
    if len(req.code) > settings.max_code_length:
        raise HTTPException(status_code=400, detail="Code too long")
    if req.expires_minutes is not None and not 1 <= req.expires_minutes <= settings.max_ttl_minutes:
        raise HTTPException(
            status_code=400,
            detail=f"expires_minutes must be between 1 and {settings.max_ttl_minutes}",
        )
    if len(req.data.encode("utf-8")) > settings.max_data_bytes:
        raise HTTPException(status_code=413, detail="Data too large")


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/check/{code}")
def check_code(code: str, request: Request):
    """Report code availability: 404 when free, 409 when a share (live or stale) holds it."""
    service: RelayService = request.app.state.service
    result = service.check_availability(_client_identity(request), code)
    MET_CHECKS.labels(result=result.value).inc()
    if result is Availability.IN_USE:
        raise HTTPException(status_code=409, detail="Code in use")
    return JSONResponse(status_code=404, content={"status": result.value})


@router.post("/share", status_code=201)
def share(req: ShareRequest, request: Request):
    settings: Settings = request.app.state.settings
    _validate_share_request(req, settings)

    service: RelayService = request.app.state.service
    expires_at = service.store_share(_client_identity(request), req.code, req.data, req.expires_minutes)
    MET_SHARES_CREATED.inc()
    return {"status": "created", "expires_at": expires_at.isoformat(timespec="seconds")}


@router.get("/receive/{code}")
def receive(code: str, request: Request):
    service: RelayService = request.app.state.service
    try:
        data = service.retrieve(_client_identity(request), code)
    except ShareNotFound:
        MET_RETRIEVALS.labels(result="not_found").inc()
        raise HTTPException(status_code=404, detail="Code not found or expired") from None
    MET_RETRIEVALS.labels(result="ok").inc()
    return {"data": data}


@router.get("/metrics")
async def metrics(request: Request):
    """Expose Prometheus metrics."""
    MET_LIMITERS.set(len(request.app.state.limiter))
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


async def _rate_limited_handler(request: Request, exc: RateLimited):
    MET_RATE_LIMITED.inc()
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


async def _storage_error_handler(request: Request, exc: StorageError):
    MET_STORAGE_ERRORS.inc()
    logger.error("Storage failure on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    logger.debug("Rejected request body on %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"detail": "Invalid JSON"})


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[ShareStore] = None,
    limiter: Optional[RateLimiterRegistry] = None,
) -> FastAPI:
    """Build the relay application.

    The store, limiter registry and sweeper are created here and owned by the
    returned app; pass `store`/`limiter` to inject your own. Stores passed in
    are left open on shutdown.
    """
    settings = settings or load_settings()
    owns_store = store is None
    if store is None:
        store = create_default_store(settings)
    if limiter is None:
        limiter = RateLimiterRegistry(
            settings.rate_limit_tokens,
            settings.rate_limit_interval,
            settings.rate_limit_burst,
            idle_ttl=settings.limiter_idle_ttl,
        )
    sweeper = ExpirySweeper(store, settings.sweep_interval, limiter=limiter)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper.start()
        try:
            yield
        finally:
            sweeper.stop(timeout=SWEEPER_STOP_TIMEOUT)
            if owns_store:
                store.close()

    app = FastAPI(title="Ephemeral Relay", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.limiter = limiter
    app.state.sweeper = sweeper
    app.state.service = RelayService(store, limiter, default_ttl=settings.default_ttl)

    app.include_router(router)
    app.add_exception_handler(RateLimited, _rate_limited_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    return app


app = create_app()


def main() -> None:
    settings: Settings = app.state.settings
    configure_logging(settings.log_level)
    logger.info("Relay server starting on port %s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
