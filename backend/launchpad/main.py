import asyncio
import time
import uuid
import logging
from fastapi import FastAPI, Request
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import get_settings
from .chain.client import ChainLogClient
from .chain.events import PairEventDecoder
from .chain.resolver import AddressResolver
from .errors import StoreUnavailable
from .services.ratelimit import FixedWindowRateLimiter
from .services.reconcile import ReconciliationService
from .stores.postgres import PostgresCoinStore
from .stores.sqlite import SQLiteCoinStore
from .routers.coins import router as coins_router
from .routers.resolve import router as resolve_router
from .routers.admin import router as admin_router

app = FastAPI(title="Launchpad Coin Registry API")
logger = logging.getLogger("app")


def build_service(settings) -> ReconciliationService:
    client = ChainLogClient(
        settings.rpc_url,
        timeout=settings.rpc_timeout_seconds,
        max_retries=settings.rpc_max_retries,
    )
    resolver = AddressResolver(
        client,
        PairEventDecoder(settings.pair_created_topic),
        factory_address=settings.factory_address,
        window_blocks=settings.receipt_window_blocks,
        scan_blocks=settings.metadata_scan_blocks,
        token_scan_blocks=settings.token_scan_blocks,
        deadline_seconds=settings.resolve_deadline_seconds,
    )
    primary = PostgresCoinStore(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=settings.db_connect_timeout_seconds,
    )
    fallback = SQLiteCoinStore(settings.fallback_db_path) if settings.fallback_enabled else None
    return ReconciliationService(
        primary,
        resolver,
        fallback=fallback,
        fallback_enabled=settings.fallback_enabled,
        backfill_concurrency=settings.backfill_concurrency,
    )


async def _backfill_loop(service: ReconciliationService, interval_seconds: int, batch_size: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await service.backfill_sweep(batch_size)
        except Exception:
            logger.exception("backfill_sweep_failed")


@app.middleware("http")
async def request_logging(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    start = time.monotonic()
    response = await call_next(request)
    duration_ms = (time.monotonic() - start) * 1000
    response.headers["x-request-id"] = request_id
    logger.info(
        "request method=%s path=%s status=%s duration_ms=%.2f request_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        request_id,
    )
    return response


def _error_payload(code: str, message: object, request_id: str | None) -> dict:
    return {"error": {"code": code, "message": message, "request_id": request_id}}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, "request_id", None)
    payload = _error_payload("http_error", exc.detail, request_id)
    payload["detail"] = exc.detail
    response = JSONResponse(status_code=exc.status_code, content=payload)
    if request_id:
        response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", None)
    payload = _error_payload("validation_error", "validation failed", request_id)
    payload["detail"] = [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    response = JSONResponse(status_code=422, content=payload)
    if request_id:
        response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    logger.exception(
        "unhandled error method=%s path=%s request_id=%s",
        request.method,
        request.url.path,
        request_id,
    )
    payload = _error_payload("internal_error", "internal error", request_id)
    response = JSONResponse(status_code=500, content=payload)
    if request_id:
        response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
async def startup():
    settings = get_settings()
    if getattr(app.state, "service", None) is None:
        app.state.service = build_service(settings)
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = FixedWindowRateLimiter(
            settings.create_rate_limit_max, settings.create_rate_limit_window_seconds
        )

    service: ReconciliationService = app.state.service
    for store in service.stores:
        try:
            await store.open()
        except StoreUnavailable as exc:
            # reads and writes keep retrying the store lazily
            logger.warning("store_open_failed backend=%s error=%s", store.name, exc.message)

    if settings.backfill_interval_seconds > 0:
        app.state.backfill_task = asyncio.create_task(
            _backfill_loop(service, settings.backfill_interval_seconds, settings.backfill_batch_size)
        )


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "backfill_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    service = getattr(app.state, "service", None)
    if service is None:
        return
    for store in service.stores:
        await store.close()
    client = getattr(service.resolver, "client", None)
    if client is not None:
        await client.aclose()


@app.get("/health")
async def health(request: Request):
    service: ReconciliationService | None = getattr(request.app.state, "service", None)
    if service is None:
        return {"ok": False, "backends": {}}
    backends = {}
    for store in service.stores:
        try:
            await store.ping()
            backends[store.name] = "ok"
        except StoreUnavailable as exc:
            backends[store.name] = f"unavailable: {exc.message}"
    return {"ok": any(v == "ok" for v in backends.values()), "backends": backends}


app.include_router(coins_router)
app.include_router(resolve_router)
app.include_router(admin_router)
