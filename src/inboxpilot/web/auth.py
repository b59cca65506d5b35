"""Bearer-token authentication for the function endpoints."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Header, HTTPException, status

from inboxpilot import invoker as invoker_module

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    """Who is calling: one workspace, or the service (watchdogs, workers)."""

    workspace_id: str | None = None
    is_service: bool = False

    def check_workspace(self, workspace_id: str | None) -> None:
        """Raise 403 when a workspace token acts on another workspace."""
        if self.is_service or workspace_id is None:
            return
        if workspace_id != self.workspace_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token is not authorised for this workspace",
            )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_auth(authorization: str | None = Header(None)) -> AuthContext:
    """Resolve ``Authorization: Bearer <token>`` to an AuthContext.

    With ``api.auth_required`` off every caller gets service scope.
    """
    api = invoker_module.invoker.config.api
    if not api.auth_required:
        return AuthContext(is_service=True)

    if not authorization:
        raise _unauthorized("Missing authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid authentication scheme")
    except ValueError as e:
        raise _unauthorized("Invalid authorization header format. Expected: Bearer {token}") from e

    if api.service_token and secrets.compare_digest(token, api.service_token):
        return AuthContext(is_service=True)
    for known, workspace_id in api.tokens.items():
        if secrets.compare_digest(token, known):
            return AuthContext(workspace_id=workspace_id)

    logger.warning("rejected unknown bearer token")
    raise _unauthorized("Invalid token")
