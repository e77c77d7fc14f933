from fastapi import Header, HTTPException, Request

from .config import get_settings
from .services.ratelimit import FixedWindowRateLimiter
from .services.reconcile import ReconciliationService


def get_service(request: Request) -> ReconciliationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return service


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter | None:
    return getattr(request.app.state, "rate_limiter", None)


def client_key(request: Request) -> str:
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    trusted = get_settings().trusted_proxies
    if not forwarded or peer not in trusted:
        return peer
    # rightmost hop not added by one of our own proxies
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


def require_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    admin_key = get_settings().admin_key
    if not admin_key:
        raise HTTPException(status_code=503, detail="admin key not configured")
    if x_admin_key != admin_key:
        raise HTTPException(status_code=401, detail="unauthorized")
