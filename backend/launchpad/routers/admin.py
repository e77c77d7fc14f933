from fastapi import APIRouter, Depends, Query

from ..config import get_settings
from ..dependencies import get_service, require_admin_key
from ..errors import StoreUnavailable
from ..schemas.coins import BackfillReport
from ..services.reconcile import ReconciliationService
from .coins import raise_http

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.post("/backfill-curves", response_model=BackfillReport)
async def backfill_curves(
    limit: int | None = Query(default=None, ge=1, le=1000),
    service: ReconciliationService = Depends(get_service),
):
    try:
        return await service.backfill_sweep(limit or get_settings().backfill_batch_size)
    except StoreUnavailable as exc:
        raise_http(exc)
