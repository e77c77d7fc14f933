from fastapi import APIRouter, Depends, HTTPException

from ..chain.resolver import ResolveHint
from ..dependencies import get_service
from ..errors import TransientChainError
from ..schemas.coins import ResolvePairIn, ResolvePairOut
from ..services.reconcile import ReconciliationService
from .coins import raise_http

router = APIRouter(tags=["resolve"])


@router.post("/resolvePair", response_model=ResolvePairOut)
async def resolve_pair(payload: ResolvePairIn, service: ReconciliationService = Depends(get_service)):
    hint = ResolveHint(
        tx_hash=payload.tx_hash,
        token_address=payload.token_address,
        symbol=payload.symbol,
        name=payload.name,
        creator=payload.creator,
    )
    if not hint.actionable:
        raise HTTPException(status_code=400, detail="tx_hash, token_address, symbol or name required")

    resolution = await service.resolve(hint)
    if resolution.status == "error":
        raise_http(TransientChainError(resolution.error or "chain_error"))
    if resolution.status == "not_found":
        return ResolvePairOut(success=False, status="not_found", strategy=resolution.error, tx_hash=payload.tx_hash)
    return ResolvePairOut(
        success=True,
        status="found",
        strategy=resolution.strategy,
        token_address=resolution.pair.token_address,
        curve_address=resolution.pair.curve_address,
        tx_hash=payload.tx_hash,
    )
