"""Pydantic request/response models shared across routers."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    """Decrypted body of a generation request."""
    prompt: str
    conversation_history: List[Dict[str, Any]] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    code: str
    message: str
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


class CSRFTokenResponse(BaseModel):
    success: bool = True
    session_id: str
    csrf_token: str
    expires_at: int
