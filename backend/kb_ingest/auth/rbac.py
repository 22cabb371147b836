"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    admin > teacher > student

Processing endpoints need at least `teacher`; the ownership check on the
chatbot itself happens in the route (see api.v1.documents). Admins pass
every ownership check.

Usage:
    @router.get("/admin/document-status")
    async def status(user: TokenPayload = RequireAdmin): ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from kb_ingest.auth.token import TokenPayload, get_current_user

_ROLE_ORDER: dict[str, int] = {
    "student": 0,
    "teacher": 1,
    "admin":   2,
}


def _has_role(user_role: str, required_role: str) -> bool:
    user_level     = _ROLE_ORDER.get(user_role, -1)
    required_level = _ROLE_ORDER.get(required_role, 999)
    return user_level >= required_level


def is_admin(user: TokenPayload) -> bool:
    return _has_role(user.role, "admin")


def require_role(minimum_role: str):
    """Dependency factory: 403 unless the caller's role is at least `minimum_role`."""
    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not _has_role(user.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=(
                    f"Insufficient permissions. "
                    f"Required: '{minimum_role}', your role: '{user.role}'."
                ),
            )
        return user

    return _dependency


RequireTeacher = Depends(require_role("teacher"))
RequireAdmin   = Depends(require_role("admin"))
