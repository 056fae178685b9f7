"""Principal resolution.

Authentication happens upstream (a gateway or identity proxy). It forwards
the authenticated user's id and role in request headers, and this module
turns those headers into a :class:`Principal` for the policy checks.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from .config import settings
from .policy import Role


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role


def principal_from_headers(request: Request) -> Principal | None:
    user_id = (request.headers.get(settings.principal_id_header) or "").strip()
    raw_role = (request.headers.get(settings.principal_role_header) or "").strip()
    if not user_id or not raw_role:
        return None
    try:
        role = Role(raw_role.upper())
    except ValueError:
        return None
    return Principal(id=user_id, role=role)


def require_principal(request: Request) -> Principal:
    """FastAPI dependency returning the caller or failing with 401."""
    principal = principal_from_headers(request)
    if principal is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal
