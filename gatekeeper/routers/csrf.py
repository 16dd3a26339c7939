"""Router for CSRF token issuance."""

from fastapi import APIRouter, Request

from gatekeeper.models import CSRFTokenResponse
from gatekeeper.rate_limit import DEFAULT_LIMIT, get_header, limiter
from gatekeeper.security import generate_session_id, get_security_middleware

router = APIRouter(tags=["csrf"])


@router.get("/csrf-token", response_model=CSRFTokenResponse)
@limiter.limit(DEFAULT_LIMIT)
def csrf_token_endpoint(request: Request):
    """Issue a fresh CSRF token for the caller's session.

    A session id is generated when ``X-Session-Id`` is absent; clients must
    send it back on later requests.
    """
    middleware = get_security_middleware()
    session_id = get_header(request.headers, "x-session-id") or generate_session_id(middleware.clock)
    token = middleware.csrf_store.generate_token(session_id)
    info = middleware.csrf_store.get_token_info(session_id) or {}
    return CSRFTokenResponse(
        session_id=session_id,
        csrf_token=token,
        expires_at=info.get("expires_at", 0),
    )
