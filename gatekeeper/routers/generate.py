"""Router for the guarded AI-generation endpoint."""

import json
import logging

from fastapi import APIRouter, Request
from pydantic import ValidationError

from gatekeeper.errors import SecurityError, SecurityErrorCode
from gatekeeper.models import ErrorResponse, GenerateRequest
from gatekeeper.security import RequestContext, SecurityMiddleware, get_security_middleware

log = logging.getLogger(__name__)

router = APIRouter(tags=["generate"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}


async def _read_json_body(request: Request, middleware: SecurityMiddleware):
    """Read the body under the size cap and parse it as JSON (None if it is not)."""
    middleware.check_request_size(request.headers)

    raw = bytearray()
    async for chunk in request.stream():
        raw.extend(chunk)
        middleware.check_request_size(request.headers, len(raw))

    if not raw:
        return None
    try:
        return json.loads(bytes(raw))
    except (UnicodeDecodeError, ValueError):
        log.debug("generate: request body is not JSON")
        return None


@router.post("/generate", responses=_ERROR_RESPONSES)
async def generate_endpoint(request: Request):
    """Admit an encrypted generation request and hand back the cleaned payload.

    The decrypted body must contain ``prompt``; generation itself happens in
    the downstream service that receives this admitted payload.
    """
    middleware = get_security_middleware()
    context = RequestContext(
        headers=request.headers,
        body=await _read_json_body(request, middleware),
        method=request.method,
    )
    admitted = middleware.validate_request(context, encrypted=True, endpoint="generate")

    try:
        payload = GenerateRequest.model_validate(admitted.payload)
    except ValidationError as exc:
        raise SecurityError(
            SecurityErrorCode.INVALID_PROMPT,
            "Decrypted payload must contain a prompt",
            {"errors": exc.errors()},
        ) from exc

    prompt = middleware.sanitize_prompt(payload.prompt)
    log.info("generate: admitted session=%s ip=%s prompt_len=%d", admitted.session_id, admitted.client_ip, len(prompt))

    return {
        "success": True,
        "session_id": admitted.session_id,
        "client_ip": admitted.client_ip,
        "remaining_requests": admitted.details.get("remaining_requests"),
        "data": {
            "prompt": prompt,
            "conversation_history": payload.conversation_history,
            "options": payload.options,
        },
    }
