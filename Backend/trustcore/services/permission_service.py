"""
Permission resolution.

A user is allowed to perform ``action`` on ``resource`` when at least one
active permission, reachable through one of the user's active roles, matches
the pair exactly and its scope is satisfied. There are no deny permissions.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional
from uuid import UUID

from trustcore.errors import ApplicationError, PermissionDeniedError, RepositoryError, TrustCoreError
from trustcore.ports import UserDirectory
from trustcore.schemas.permission import Permission, PermissionScope, UserWithRoles
from trustcore.stores.permission_store import PermissionStore

logger = logging.getLogger(__name__)


class PermissionDecision:
    """Outcome of a permission check. ``error`` is set when the check could not be completed."""

    def __init__(
        self,
        allowed: bool,
        matched: Optional[Permission] = None,
        error: Optional[RepositoryError] = None,
    ):
        self.allowed = allowed
        self.matched = matched
        self.error = error

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        return f"PermissionDecision(allowed={self.allowed}, error={self.error!r})"


class PermissionResolver:
    def __init__(self, store: PermissionStore, users: UserDirectory):
        self.store = store
        self.users = users

    async def check_permission(
        self,
        user_id: UUID,
        resource: str,
        action: str,
        resource_owner_id: Optional[UUID] = None,
        resource_organization_id: Optional[UUID] = None,
    ) -> PermissionDecision:
        """Resolve a grant. Never raises: on any failure the decision is a denial carrying the error."""
        try:
            candidates = await self.store.get_candidate_permissions(user_id, resource, action)
            principal_org: Optional[UUID] = None
            if resource_organization_id is not None and any(
                p.scope == PermissionScope.ORGANIZATION for p in candidates
            ):
                principal = await self.users.get_user(user_id)
                principal_org = principal.org_id if principal else None
        except TrustCoreError as e:
            error = e if isinstance(e, RepositoryError) else RepositoryError(str(e), cause=e)
            logger.error("Permission check failed closed user=%s %s:%s: %s", user_id, resource, action, e.message)
            return PermissionDecision(False, error=error)
        except Exception as e:
            logger.exception("Permission check failed closed user=%s %s:%s", user_id, resource, action)
            return PermissionDecision(False, error=RepositoryError("Permission check failed", cause=e))

        for p in candidates:
            if self._scope_satisfied(p, user_id, resource_owner_id, resource_organization_id, principal_org):
                return PermissionDecision(True, matched=p)
        return PermissionDecision(False)

    @staticmethod
    def _scope_satisfied(
        permission: Permission,
        user_id: UUID,
        resource_owner_id: Optional[UUID],
        resource_organization_id: Optional[UUID],
        principal_org: Optional[UUID],
    ) -> bool:
        if permission.scope == PermissionScope.GLOBAL:
            return True
        if permission.scope == PermissionScope.ORGANIZATION:
            # without an explicit organization the caller has already scoped the query
            if resource_organization_id is None:
                return True
            return principal_org is not None and principal_org == resource_organization_id
        if permission.scope == PermissionScope.OWN:
            return resource_owner_id is not None and resource_owner_id == user_id
        return False

    async def require_permission(
        self,
        user_id: UUID,
        resource: str,
        action: str,
        resource_owner_id: Optional[UUID] = None,
        resource_organization_id: Optional[UUID] = None,
    ) -> Permission:
        decision = await self.check_permission(user_id, resource, action, resource_owner_id, resource_organization_id)
        if decision.error is not None:
            raise ApplicationError(
                "Unable to verify permissions",
                details={"user_id": str(user_id), "resource": resource, "action": action},
                cause=decision.error,
            )
        if not decision.allowed:
            raise PermissionDeniedError(user_id, resource, action)
        return decision.matched

    async def get_user_permissions(self, user_id: UUID) -> List[Permission]:
        return await self.store.get_user_permissions(user_id)

    async def get_user_with_roles(self, user_id: UUID) -> Optional[UserWithRoles]:
        user = await self.users.get_user(user_id)
        if user is None:
            return None
        roles = await self.store.get_user_roles_with_permissions(user_id)

        # union over active roles and active permissions, the same set check_permission sees
        merged: Dict[UUID, Permission] = {}
        for role in roles:
            if not role.is_active:
                continue
            for p in role.permissions:
                if p.is_active:
                    merged.setdefault(p.id, p)
        return UserWithRoles(
            id=user.id,
            email=user.email,
            name=user.name,
            roles=roles,
            all_permissions=sorted(merged.values(), key=lambda p: (p.resource, p.action, p.name)),
        )
