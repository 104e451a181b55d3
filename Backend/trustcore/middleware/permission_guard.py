"""FastAPI dependencies guarding routes with role/permission checks (JWT bearer + SQLAlchemy)."""
from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import async_sessionmaker

from trustcore.database import get_session_factory
from trustcore.schemas.security import SecurityEventType, Severity
from trustcore.middleware.security_audit import request_context
from trustcore.services.permission_service import PermissionResolver
from trustcore.stores.directory import SqlUserDirectory
from trustcore.stores.permission_store import PermissionStore
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.utils.security import decode_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

NIL_UUID = UUID(int=0)


class AuthContext:
    """Authenticated principal taken from an access token."""
    def __init__(self, user_id: UUID, org_id: Optional[UUID] = None, email: Optional[str] = None):
        self.user_id = user_id
        self.org_id = org_id
        self.email = email


def _parse_uuid(value) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    if not credentials:
        raise HTTPException(status_code=401, detail="Missing or invalid authentication token")

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Missing or invalid authentication token")

    user_id = _parse_uuid(payload.get("sub"))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing or invalid authentication token")

    return AuthContext(user_id=user_id, org_id=_parse_uuid(payload.get("org_id")), email=payload.get("email"))


class PermissionChecker:
    """
    Dependency class for permission-based access control.

    ``owner_param`` names a path or query parameter holding the owner id of
    the addressed resource; it is only consulted by ``own``-scoped grants.
    ``org_param`` names the parameter holding the addressed organization id
    for ``organization``-scoped grants. Without it the organization from the
    access token is used, so such grants only cover the caller's own
    organization.
    Denials, including checks that could not be completed, are 403 and are
    recorded as ``unauthorized_access_attempt``.
    """
    def __init__(
        self, resource: str, action: str, owner_param: Optional[str] = None, org_param: Optional[str] = None
    ):
        self.resource = resource
        self.action = action
        self.owner_param = owner_param
        self.org_param = org_param

    @staticmethod
    def _param(request: Request, name: Optional[str]) -> Optional[UUID]:
        if not name:
            return None
        return _parse_uuid(request.path_params.get(name) or request.query_params.get(name))

    async def __call__(
        self,
        request: Request,
        auth: AuthContext = Depends(get_current_user),
        session_factory: async_sessionmaker = Depends(get_session_factory),
    ) -> AuthContext:
        owner_id = self._param(request, self.owner_param)
        if self.org_param:
            # a missing or malformed id must not fall back to the caller's organization
            org_id = self._param(request, self.org_param) or NIL_UUID
        else:
            org_id = auth.org_id
        resolver = PermissionResolver(PermissionStore(session_factory), SqlUserDirectory(session_factory))
        decision = await resolver.check_permission(
            auth.user_id,
            self.resource,
            self.action,
            resource_owner_id=owner_id,
            resource_organization_id=org_id,
        )
        if decision:
            return auth

        reason = "permission_check_failed" if decision.error is not None else "permission_denied"
        logger.warning(
            "Access denied user=%s %s:%s path=%s reason=%s",
            auth.user_id, self.resource, self.action, request.url.path, reason,
        )
        if auth.org_id is not None:
            await SecurityEventLog(session_factory).record_event(
                organization_id=auth.org_id,
                event_type=SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
                severity=Severity.MEDIUM,
                description=f"Access denied to {self.resource}:{self.action}",
                success=False,
                user_id=auth.user_id,
                metadata={
                    "reason": reason,
                    "resource": self.resource,
                    "action": self.action,
                    "resource_owner_id": str(owner_id) if owner_id else None,
                    "path": request.url.path,
                    "method": request.method,
                },
                **request_context(request),
            )
        raise HTTPException(status_code=403, detail=f"Permission denied: {self.resource}:{self.action}")
