"""Permission and role administration."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from trustcore.schemas import permission as schemas
from trustcore.schemas.common import Page, Pagination
from trustcore.schemas.security import SecurityEventType, Severity
from trustcore.stores.permission_store import PermissionStore
from trustcore.stores.security_event_log import SecurityEventLog

logger = logging.getLogger(__name__)


class RoleAdministrationService:
    """
    CRUD for permissions and roles plus edge management.

    Edge mutations record a ``permission_changed`` security event when an
    ``organization_id`` is supplied. Recording is best-effort: the edge
    change has already been committed when the event is written.
    """

    def __init__(self, store: PermissionStore, events: Optional[SecurityEventLog] = None):
        self.store = store
        self.events = events

    # ---------- permissions ----------

    async def create_permission(self, data: schemas.PermissionCreate) -> schemas.Permission:
        p = await self.store.create_permission(data)
        logger.info("Permission created id=%s %s:%s scope=%s", p.id, p.resource, p.action, p.scope.value)
        return p

    async def update_permission(self, permission_id: UUID, data: schemas.PermissionUpdate) -> schemas.Permission:
        return await self.store.update_permission(permission_id, data)

    async def delete_permission(self, permission_id: UUID) -> None:
        await self.store.delete_permission(permission_id)
        logger.info("Permission deleted id=%s", permission_id)

    async def find_permission(self, permission_id: UUID) -> Optional[schemas.Permission]:
        return await self.store.find_permission(permission_id)

    async def list_permissions(self, query: Optional[schemas.ListPermissionsQuery] = None) -> Page[schemas.Permission]:
        return await self.store.list_permissions(query or schemas.ListPermissionsQuery())

    # ---------- roles ----------

    async def create_role(self, data: schemas.RoleCreate) -> schemas.Role:
        r = await self.store.create_role(data)
        logger.info("Role created id=%s name=%s system=%s", r.id, r.name, r.is_system)
        return r

    async def update_role(self, role_id: UUID, data: schemas.RoleUpdate) -> schemas.Role:
        return await self.store.update_role(role_id, data)

    async def delete_role(self, role_id: UUID) -> None:
        await self.store.delete_role(role_id)
        logger.info("Role deleted id=%s", role_id)

    async def find_role(self, role_id: UUID) -> Optional[schemas.Role]:
        return await self.store.find_role(role_id)

    async def find_role_with_permissions(self, role_id: UUID) -> Optional[schemas.RoleWithPermissions]:
        return await self.store.find_role_with_permissions(role_id)

    async def list_roles(self, query: Optional[schemas.ListRolesQuery] = None) -> Page[schemas.Role]:
        return await self.store.list_roles(query or schemas.ListRolesQuery())

    async def list_roles_with_permissions(
        self, query: Optional[schemas.ListRolesQuery] = None
    ) -> Page[schemas.RoleWithPermissions]:
        return await self.store.list_roles_with_permissions(query or schemas.ListRolesQuery())

    # ---------- role <-> permission ----------

    async def assign_permission_to_role(
        self,
        role_id: UUID,
        permission_id: UUID,
        organization_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
    ) -> schemas.RolePermission:
        edge = await self.store.assign_permission_to_role(role_id, permission_id)
        await self._record(
            organization_id, actor_id, None,
            f"Permission {permission_id} assigned to role {role_id}",
            {"action": "permission_assigned", "role_id": str(role_id), "permission_id": str(permission_id)},
        )
        return edge

    async def remove_permission_from_role(
        self,
        role_id: UUID,
        permission_id: UUID,
        organization_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
    ) -> None:
        await self.store.remove_permission_from_role(role_id, permission_id)
        await self._record(
            organization_id, actor_id, None,
            f"Permission {permission_id} removed from role {role_id}",
            {"action": "permission_removed", "role_id": str(role_id), "permission_id": str(permission_id)},
        )

    async def get_role_permissions(self, role_id: UUID) -> List[schemas.Permission]:
        return await self.store.get_role_permissions(role_id)

    async def set_role_permissions(
        self,
        role_id: UUID,
        permission_ids: Sequence[UUID],
        organization_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
    ) -> List[schemas.Permission]:
        before = {p.id for p in await self.store.get_role_permissions(role_id)}
        after = await self.store.set_role_permissions(role_id, permission_ids)
        after_ids = {p.id for p in after}
        added, removed = after_ids - before, before - after_ids
        if added or removed:
            await self._record(
                organization_id, actor_id, None,
                f"Permissions of role {role_id} replaced",
                {
                    "action": "role_permissions_set",
                    "role_id": str(role_id),
                    "permission_ids": sorted(str(i) for i in after_ids),
                    "added": sorted(str(i) for i in added),
                    "removed": sorted(str(i) for i in removed),
                },
            )
        return after

    # ---------- user <-> role ----------

    async def assign_role_to_user(
        self,
        user_id: UUID,
        role_id: UUID,
        assigned_by: UUID,
        organization_id: Optional[UUID] = None,
    ) -> schemas.UserRoleAssignment:
        edge = await self.store.assign_role_to_user(user_id, role_id, assigned_by)
        await self._record(
            organization_id, assigned_by, user_id,
            f"Role {role_id} assigned to user {user_id}",
            {"action": "role_assigned", "role_id": str(role_id)},
        )
        return edge

    async def remove_role_from_user(
        self,
        user_id: UUID,
        role_id: UUID,
        organization_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
    ) -> None:
        await self.store.remove_role_from_user(user_id, role_id)
        await self._record(
            organization_id, actor_id, user_id,
            f"Role {role_id} removed from user {user_id}",
            {"action": "role_removed", "role_id": str(role_id)},
        )

    async def get_user_roles(self, user_id: UUID) -> List[schemas.Role]:
        return await self.store.get_user_roles(user_id)

    async def list_user_roles(
        self, user_id: UUID, pagination: Optional[Pagination] = None
    ) -> Page[schemas.UserRoleAssignment]:
        return await self.store.list_user_roles(user_id, pagination)

    async def set_user_roles(
        self,
        user_id: UUID,
        role_ids: Sequence[UUID],
        assigned_by: UUID,
        organization_id: Optional[UUID] = None,
    ) -> List[schemas.UserRoleAssignment]:
        before = {r.id for r in await self.store.get_user_roles(user_id)}
        edges = await self.store.set_user_roles(user_id, role_ids, assigned_by)
        after = {e.role_id for e in edges}
        added, removed = after - before, before - after
        if added or removed:
            await self._record(
                organization_id, assigned_by, user_id,
                f"Roles of user {user_id} replaced",
                {
                    "action": "user_roles_set",
                    "role_ids": sorted(str(i) for i in after),
                    "added": sorted(str(i) for i in added),
                    "removed": sorted(str(i) for i in removed),
                },
            )
        return edges

    # ---------- helpers ----------

    async def _record(
        self,
        organization_id: Optional[UUID],
        actor_id: Optional[UUID],
        target_user_id: Optional[UUID],
        description: str,
        metadata: Dict[str, Any],
    ) -> None:
        if organization_id is None or self.events is None:
            return
        await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.PERMISSION_CHANGED,
            severity=Severity.MEDIUM,
            description=description,
            success=True,
            user_id=actor_id,
            target_user_id=target_user_id,
            metadata=metadata,
        )
