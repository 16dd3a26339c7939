"""FastAPI app exposing the admission gateway in front of the AI endpoint.

Endpoints:
  GET  /                  -> service info
  GET  /health            -> liveness plus limiter / token counts
  GET  /csrf-token        -> issue a CSRF token for the session
  POST /generate          -> encrypted, signed, rate-limited generation request
  GET  /security/stats    -> limiter statistics
  POST /security/cleanup  -> run a garbage-collection sweep now

Errors:
  400/403/429: { "success": false, "error": { "code": "...", "message": "..." } }
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from gatekeeper import config
from gatekeeper.errors import RateLimitError, SecurityError
from gatekeeper.logging_config import setup_logging
from gatekeeper.rate_limit import limiter
from gatekeeper.routers import csrf, generate, security
from gatekeeper.security import get_security_middleware
from gatekeeper.sweeper import Sweeper

log = logging.getLogger(__name__)

ENCRYPTION_HEADERS = [
    "X-Session-Id",
    "X-Encrypted-Request",
    "X-IV",
    "X-Signature",
    "X-Timestamp",
    "X-CSRF-Token",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    sweeper = Sweeper(get_security_middleware().cleanup, config.CLEANUP_INTERVAL_SECONDS)
    sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        sweeper.stop()


app = FastAPI(title="AI Request Gatekeeper", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError):
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_response_body(), headers=headers)


@app.middleware("http")
async def set_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    if config.FORCE_HTTPS:
        response.headers["Strict-Transport-Security"] = f"max-age={config.HSTS_MAX_AGE}; includeSubDomains; preload"
    if config.CSP_ENABLED:
        response.headers["Content-Security-Policy"] = config.CONTENT_SECURITY_POLICY
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    log.info("Incoming request: %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    except Exception as exc:
        log.exception("Error handling request %s %s: %s", request.method, request.url.path, exc)
        raise
    log.info("Response %s for %s %s", response.status_code, request.method, request.url.path)
    return response


_cors_origins = config.ALLOWED_ORIGINS or ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials="*" not in _cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", *ENCRYPTION_HEADERS],
    expose_headers=["Retry-After"],
)

app.include_router(csrf.router)
app.include_router(generate.router)
app.include_router(security.router)


@app.get("/")
async def root():
    """Service info and the list of exposed endpoints."""
    return {
        "service": "ai-request-gatekeeper",
        "endpoints": [
            {"path": "/health", "method": "GET", "desc": "liveness and tracked-state counts"},
            {"path": "/csrf-token", "method": "GET", "desc": "issue a CSRF token for the session"},
            {"path": "/generate", "method": "POST", "desc": "encrypted, signed, rate-limited generation request"},
            {"path": "/security/stats", "method": "GET", "desc": "limiter statistics"},
            {"path": "/security/cleanup", "method": "POST", "desc": "run a cleanup sweep now"},
        ],
    }


@app.get("/health")
async def health():
    stats = get_security_middleware().get_stats()
    return {
        "status": "healthy",
        "tracked_sessions": stats["sessions"]["total_sessions"],
        "tracked_ips": stats["ips"]["total_sessions"],
        "csrf_tokens": stats["csrf_tokens"],
    }
