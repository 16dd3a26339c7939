"""Router for limiter / token store maintenance endpoints."""

from fastapi import APIRouter, Request

from gatekeeper.rate_limit import DEFAULT_LIMIT, limiter
from gatekeeper.security import get_security_middleware

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/stats")
@limiter.limit(DEFAULT_LIMIT)
def get_security_stats(request: Request):
    """Counts of tracked sessions, IPs, blocked keys and live CSRF tokens."""
    return get_security_middleware().get_stats()


@router.post("/cleanup")
@limiter.limit(DEFAULT_LIMIT)
def run_cleanup(request: Request):
    """Run one garbage-collection sweep now instead of waiting for the timer."""
    middleware = get_security_middleware()
    removed = middleware.cleanup()
    return {
        "status": "cleaned",
        "removed": removed,
        "stats_after": middleware.get_stats(),
    }
