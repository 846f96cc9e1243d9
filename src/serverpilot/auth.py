"""Caller identity for the HTTP layer.

Clients send ``Authorization: Bearer <token>``; tokens and their roles are
configured through ``SERVERPILOT_API_TOKENS`` (JSON object token -> role).
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import HTTPException, Request

ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"


@dataclass(frozen=True)
class Caller:
    name: str
    role: str = ROLE_VIEWER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_caller(request: Request) -> Caller | None:
    """Resolve the caller, or ``None`` for anonymous requests."""
    token = _bearer_token(request)
    if token is None:
        return None
    tokens: dict[str, str] = request.app.state.settings.api_tokens
    for known, role in tokens.items():
        if hmac.compare_digest(known, token):
            return Caller(name=f"token:{known[:4]}", role=role)
    return None


def require_caller(request: Request) -> Caller:
    caller = get_caller(request)
    if caller is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return caller


def require_admin(request: Request) -> Caller:
    caller = require_caller(request)
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return caller
