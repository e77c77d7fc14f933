import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..dependencies import client_key, get_rate_limiter, get_service
from ..errors import ConflictError, PendingNotFound, StoreUnavailable, TransientChainError
from ..schemas.coins import CoinCreate, CoinOut, CoinReserve, CoinWriteOut
from ..services.reconcile import ReconciliationService, WriteResult

router = APIRouter(prefix="/coins", tags=["coins"])
logger = logging.getLogger(__name__)


def raise_http(exc: Exception) -> None:
    """Map service errors onto HTTP statuses; anything else propagates."""
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail={"field": exc.field, "message": exc.message}) from exc
    if isinstance(exc, PendingNotFound):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, TransientChainError):
        raise HTTPException(
            status_code=502, detail={"message": "chain rpc failed, retry later", "reason": str(exc)}
        ) from exc
    if isinstance(exc, StoreUnavailable):
        raise HTTPException(status_code=503, detail={"message": "storage unavailable, retry later"}) from exc
    raise exc


async def _check_rate(request: Request) -> None:
    limiter = get_rate_limiter(request)
    if limiter is None:
        return
    key = client_key(request)
    if not await limiter.allow(key):
        logger.info("rate limited client=%s path=%s", key, request.url.path)
        raise HTTPException(status_code=429, detail="too many requests")


def _write_out(result: WriteResult) -> CoinWriteOut:
    return CoinWriteOut(status=result.status, backend=result.backend, coin=CoinOut.from_record(result.record))


@router.post("", response_model=CoinWriteOut)
async def create_coin(
    payload: CoinCreate,
    request: Request,
    service: ReconciliationService = Depends(get_service),
):
    await _check_rate(request)
    try:
        result = await service.create(payload)
    except (ConflictError, TransientChainError, StoreUnavailable) as exc:
        raise_http(exc)
    return _write_out(result)


@router.post("/reserve", response_model=CoinWriteOut)
async def reserve_coin(
    payload: CoinReserve,
    request: Request,
    service: ReconciliationService = Depends(get_service),
):
    """Phase one of the two-phase launch: hold name and symbol before the deploy tx."""
    await _check_rate(request)
    candidate = CoinCreate(**payload.model_dump(), tx_hash=f"pending-{service.clock()}")
    try:
        result = await service.reserve(candidate)
    except (ConflictError, StoreUnavailable) as exc:
        raise_http(exc)
    return _write_out(result)


@router.post("/finalize", response_model=CoinWriteOut)
async def finalize_coin(
    payload: CoinCreate,
    service: ReconciliationService = Depends(get_service),
):
    try:
        result = await service.finalize_pending(payload)
    except (ConflictError, PendingNotFound, TransientChainError, StoreUnavailable) as exc:
        raise_http(exc)
    return _write_out(result)


@router.get("", response_model=list[CoinOut])
async def list_coins(
    limit: int = Query(default=50, ge=1, le=500),
    service: ReconciliationService = Depends(get_service),
):
    try:
        records, _ = await service.list_recent(limit)
    except StoreUnavailable as exc:
        raise_http(exc)
    return [CoinOut.from_record(r) for r in records]


@router.get("/{coin_id}", response_model=CoinOut)
async def get_coin(coin_id: str, service: ReconciliationService = Depends(get_service)):
    try:
        record, _ = await service.get(coin_id)
    except StoreUnavailable as exc:
        raise_http(exc)
    if record is None:
        raise HTTPException(status_code=404, detail="Coin not found")
    return CoinOut.from_record(record)
