"""Permission store: roles, permissions and their edges (SQLAlchemy async)."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trustcore.errors import ApplicationError, ConflictError, NotFoundError
from trustcore.models.directory import User
from trustcore.models.permission import Permission, Role, RolePermission, UserRole
from trustcore.schemas.common import Page, Pagination
from trustcore.schemas import permission as schemas
from trustcore.stores.base import StoreBase, to_record

logger = logging.getLogger(__name__)


def _unique(ids: Iterable[UUID]) -> List[UUID]:
    seen: List[UUID] = []
    for i in ids:
        if i not in seen:
            seen.append(i)
    return seen


class PermissionStore(StoreBase):
    # -------------------------
    # Permissions
    # -------------------------

    async def create_permission(self, data: schemas.PermissionCreate) -> schemas.Permission:
        async def op(session: AsyncSession) -> schemas.Permission:
            now = self._clock()
            p = Permission(
                name=data.name,
                description=data.description,
                resource=data.resource,
                action=data.action,
                scope=data.scope.value,
                is_active=data.is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(p)
            await session.commit()
            return to_record(schemas.Permission, p, "permission")

        return await self._run("create permission", op)

    async def update_permission(self, permission_id: UUID, data: schemas.PermissionUpdate) -> schemas.Permission:
        async def op(session: AsyncSession) -> schemas.Permission:
            p = await session.get(Permission, permission_id)
            if not p:
                raise NotFoundError("Permission not found", details={"permission_id": str(permission_id)})
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is None and field != "description":
                    continue
                setattr(p, field, value.value if field == "scope" else value)
            p.updated_at = self._clock()
            await session.commit()
            return to_record(schemas.Permission, p, "permission")

        return await self._run("update permission", op)

    async def delete_permission(self, permission_id: UUID) -> None:
        """Delete a permission and every role edge pointing at it."""
        async def op(session: AsyncSession) -> None:
            p = await session.get(Permission, permission_id)
            if not p:
                raise NotFoundError("Permission not found", details={"permission_id": str(permission_id)})
            await session.execute(delete(RolePermission).where(RolePermission.permission_id == permission_id))
            await session.delete(p)
            await session.commit()

        await self._run("delete permission", op)

    async def find_permission(self, permission_id: UUID) -> Optional[schemas.Permission]:
        async def op(session: AsyncSession) -> Optional[schemas.Permission]:
            p = await session.get(Permission, permission_id)
            return to_record(schemas.Permission, p, "permission") if p else None

        return await self._run("find permission", op)

    async def list_permissions(self, query: schemas.ListPermissionsQuery) -> Page[schemas.Permission]:
        f = query.filter
        conditions = []
        if f.resource:
            conditions.append(Permission.resource == f.resource)
        if f.action:
            conditions.append(Permission.action == f.action)
        if f.scope:
            conditions.append(Permission.scope == f.scope.value)
        if f.is_active is not None:
            conditions.append(Permission.is_active.is_(f.is_active))
        if f.keyword:
            like = f"%{f.keyword}%"
            conditions.append(or_(Permission.name.ilike(like), Permission.description.ilike(like)))

        async def op(session: AsyncSession) -> Page[schemas.Permission]:
            total = await session.scalar(select(func.count()).select_from(Permission).where(*conditions))
            res = await session.execute(
                select(Permission)
                .where(*conditions)
                .order_by(Permission.created_at.desc(), Permission.name)
                .offset(query.offset)
                .limit(query.limit)
            )
            items = [to_record(schemas.Permission, p, "permission") for p in res.scalars().all()]
            return Page[schemas.Permission](items=items, count=total or 0, page=query.page, limit=query.limit)

        return await self._run("list permissions", op)

    # -------------------------
    # Roles
    # -------------------------

    async def create_role(self, data: schemas.RoleCreate) -> schemas.Role:
        async def op(session: AsyncSession) -> schemas.Role:
            now = self._clock()
            r = Role(
                name=data.name,
                description=data.description,
                is_system=data.is_system,
                is_active=data.is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(r)
            await session.commit()
            return to_record(schemas.Role, r, "role")

        return await self._run("create role", op)

    async def update_role(self, role_id: UUID, data: schemas.RoleUpdate) -> schemas.Role:
        async def op(session: AsyncSession) -> schemas.Role:
            r = await session.get(Role, role_id)
            if not r:
                raise NotFoundError("Role not found", details={"role_id": str(role_id)})
            if r.is_system:
                raise ApplicationError("Cannot modify system role", details={"role_id": str(role_id)})
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is None and field != "description":
                    continue
                setattr(r, field, value)
            r.updated_at = self._clock()
            await session.commit()
            return to_record(schemas.Role, r, "role")

        return await self._run("update role", op)

    async def delete_role(self, role_id: UUID) -> None:
        async def op(session: AsyncSession) -> None:
            r = await session.get(Role, role_id)
            if not r:
                raise NotFoundError("Role not found", details={"role_id": str(role_id)})
            if r.is_system:
                raise ApplicationError("Cannot delete system role", details={"role_id": str(role_id)})
            await session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
            await session.execute(delete(UserRole).where(UserRole.role_id == role_id))
            await session.delete(r)
            await session.commit()

        await self._run("delete role", op)

    async def find_role(self, role_id: UUID) -> Optional[schemas.Role]:
        async def op(session: AsyncSession) -> Optional[schemas.Role]:
            r = await session.get(Role, role_id)
            return to_record(schemas.Role, r, "role") if r else None

        return await self._run("find role", op)

    async def find_role_with_permissions(self, role_id: UUID) -> Optional[schemas.RoleWithPermissions]:
        async def op(session: AsyncSession) -> Optional[schemas.RoleWithPermissions]:
            r = await session.get(Role, role_id)
            if not r:
                return None
            perms = await self._permissions_by_role(session, [r.id])
            return self._with_permissions(r, perms.get(r.id, []))

        return await self._run("find role with permissions", op)

    def _role_conditions(self, f: schemas.RoleFilter) -> list:
        conditions = []
        if f.is_system is not None:
            conditions.append(Role.is_system.is_(f.is_system))
        if f.is_active is not None:
            conditions.append(Role.is_active.is_(f.is_active))
        if f.keyword:
            like = f"%{f.keyword}%"
            conditions.append(or_(Role.name.ilike(like), Role.description.ilike(like)))
        return conditions

    async def _list_role_rows(self, session: AsyncSession, query: schemas.ListRolesQuery):
        conditions = self._role_conditions(query.filter)
        total = await session.scalar(select(func.count()).select_from(Role).where(*conditions))
        res = await session.execute(
            select(Role)
            .where(*conditions)
            .order_by(Role.created_at.desc(), Role.name)
            .offset(query.offset)
            .limit(query.limit)
        )
        return res.scalars().all(), total or 0

    async def list_roles(self, query: schemas.ListRolesQuery) -> Page[schemas.Role]:
        async def op(session: AsyncSession) -> Page[schemas.Role]:
            rows, total = await self._list_role_rows(session, query)
            items = [to_record(schemas.Role, r, "role") for r in rows]
            return Page[schemas.Role](items=items, count=total, page=query.page, limit=query.limit)

        return await self._run("list roles", op)

    async def list_roles_with_permissions(self, query: schemas.ListRolesQuery) -> Page[schemas.RoleWithPermissions]:
        async def op(session: AsyncSession) -> Page[schemas.RoleWithPermissions]:
            rows, total = await self._list_role_rows(session, query)
            perms = await self._permissions_by_role(session, [r.id for r in rows])
            items = [self._with_permissions(r, perms.get(r.id, [])) for r in rows]
            return Page[schemas.RoleWithPermissions](items=items, count=total, page=query.page, limit=query.limit)

        return await self._run("list roles with permissions", op)

    # -------------------------
    # Role <-> permission edges
    # -------------------------

    async def assign_permission_to_role(self, role_id: UUID, permission_id: UUID) -> schemas.RolePermission:
        async def op(session: AsyncSession) -> schemas.RolePermission:
            await self._require_role(session, role_id)
            await self._require_permissions(session, [permission_id])
            existing = await session.execute(
                select(RolePermission.id).where(
                    RolePermission.role_id == role_id, RolePermission.permission_id == permission_id
                )
            )
            if existing.first() is not None:
                raise ConflictError(
                    "Permission is already assigned to role",
                    details={"role_id": str(role_id), "permission_id": str(permission_id)},
                )
            edge = RolePermission(role_id=role_id, permission_id=permission_id, created_at=self._clock())
            session.add(edge)
            try:
                await session.commit()
            except IntegrityError as e:
                # concurrent assignment won the unique constraint
                raise ConflictError("Permission is already assigned to role", cause=e)
            return to_record(schemas.RolePermission, edge, "role permission")

        return await self._run("assign permission to role", op)

    async def remove_permission_from_role(self, role_id: UUID, permission_id: UUID) -> None:
        async def op(session: AsyncSession) -> None:
            res = await session.execute(
                delete(RolePermission).where(
                    RolePermission.role_id == role_id, RolePermission.permission_id == permission_id
                )
            )
            if res.rowcount == 0:
                raise NotFoundError(
                    "Permission is not assigned to role",
                    details={"role_id": str(role_id), "permission_id": str(permission_id)},
                )
            await session.commit()

        await self._run("remove permission from role", op)

    async def get_role_permissions(self, role_id: UUID) -> List[schemas.Permission]:
        async def op(session: AsyncSession) -> List[schemas.Permission]:
            perms = await self._permissions_by_role(session, [role_id])
            return perms.get(role_id, [])

        return await self._run("get role permissions", op)

    async def set_role_permissions(self, role_id: UUID, permission_ids: Sequence[UUID]) -> List[schemas.Permission]:
        """Replace the permission set of a role in one transaction. Unchanged edges are kept."""
        target = _unique(permission_ids)

        async def op(session: AsyncSession) -> List[schemas.Permission]:
            await self._require_role(session, role_id)
            await self._require_permissions(session, target)

            res = await session.execute(
                select(RolePermission.permission_id).where(RolePermission.role_id == role_id)
            )
            current = set(res.scalars().all())
            to_remove = current - set(target)
            to_add = [pid for pid in target if pid not in current]

            if to_remove:
                await session.execute(
                    delete(RolePermission).where(
                        RolePermission.role_id == role_id, RolePermission.permission_id.in_(to_remove)
                    )
                )
            now = self._clock()
            session.add_all(RolePermission(role_id=role_id, permission_id=pid, created_at=now) for pid in to_add)
            await session.commit()

            perms = await self._permissions_by_role(session, [role_id])
            return perms.get(role_id, [])

        return await self._run("set role permissions", op)

    # -------------------------
    # User <-> role edges
    # -------------------------

    async def assign_role_to_user(self, user_id: UUID, role_id: UUID, assigned_by: UUID) -> schemas.UserRoleAssignment:
        async def op(session: AsyncSession) -> schemas.UserRoleAssignment:
            await self._require_user(session, user_id)
            await self._require_role(session, role_id)
            existing = await session.execute(
                select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
            )
            if existing.first() is not None:
                raise ConflictError(
                    "Role is already assigned to user",
                    details={"user_id": str(user_id), "role_id": str(role_id)},
                )
            edge = UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by, assigned_at=self._clock())
            session.add(edge)
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError("Role is already assigned to user", cause=e)
            return to_record(schemas.UserRoleAssignment, edge, "user role")

        return await self._run("assign role to user", op)

    async def remove_role_from_user(self, user_id: UUID, role_id: UUID) -> None:
        async def op(session: AsyncSession) -> None:
            res = await session.execute(
                delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
            )
            if res.rowcount == 0:
                raise NotFoundError(
                    "Role is not assigned to user",
                    details={"user_id": str(user_id), "role_id": str(role_id)},
                )
            await session.commit()

        await self._run("remove role from user", op)

    async def get_user_roles(self, user_id: UUID, active_only: bool = False) -> List[schemas.Role]:
        async def op(session: AsyncSession) -> List[schemas.Role]:
            stmt = (
                select(Role)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id)
                .order_by(Role.name)
            )
            if active_only:
                stmt = stmt.where(Role.is_active.is_(True))
            res = await session.execute(stmt)
            return [to_record(schemas.Role, r, "role") for r in res.scalars().all()]

        return await self._run("get user roles", op)

    async def get_user_roles_with_permissions(self, user_id: UUID) -> List[schemas.RoleWithPermissions]:
        async def op(session: AsyncSession) -> List[schemas.RoleWithPermissions]:
            res = await session.execute(
                select(Role)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id)
                .order_by(Role.name)
            )
            rows = res.scalars().all()
            perms = await self._permissions_by_role(session, [r.id for r in rows])
            return [self._with_permissions(r, perms.get(r.id, [])) for r in rows]

        return await self._run("get user roles with permissions", op)

    async def list_user_roles(self, user_id: UUID, pagination: Optional[Pagination] = None) -> Page[schemas.UserRoleAssignment]:
        pagination = pagination or Pagination()

        async def op(session: AsyncSession) -> Page[schemas.UserRoleAssignment]:
            total = await session.scalar(
                select(func.count()).select_from(UserRole).where(UserRole.user_id == user_id)
            )
            res = await session.execute(
                select(UserRole)
                .where(UserRole.user_id == user_id)
                .order_by(UserRole.assigned_at.desc())
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            items = [to_record(schemas.UserRoleAssignment, e, "user role") for e in res.scalars().all()]
            return Page[schemas.UserRoleAssignment](
                items=items, count=total or 0, page=pagination.page, limit=pagination.limit
            )

        return await self._run("list user roles", op)

    async def set_user_roles(
        self, user_id: UUID, role_ids: Sequence[UUID], assigned_by: UUID
    ) -> List[schemas.UserRoleAssignment]:
        """
        Replace the role set of a user in one transaction.

        Edges of roles that stay assigned are left untouched, so their
        ``assigned_by`` / ``assigned_at`` survive; calling this twice with the
        same set is a no-op.
        """
        target = _unique(role_ids)

        async def op(session: AsyncSession) -> List[schemas.UserRoleAssignment]:
            await self._require_user(session, user_id)
            await self._require_roles(session, target)

            res = await session.execute(select(UserRole.role_id).where(UserRole.user_id == user_id))
            current = set(res.scalars().all())
            to_remove = current - set(target)
            to_add = [rid for rid in target if rid not in current]

            if to_remove:
                await session.execute(
                    delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id.in_(to_remove))
                )
            now = self._clock()
            session.add_all(
                UserRole(user_id=user_id, role_id=rid, assigned_by=assigned_by, assigned_at=now) for rid in to_add
            )
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError("Concurrent role assignment for user", details={"user_id": str(user_id)}, cause=e)

            res = await session.execute(
                select(UserRole).where(UserRole.user_id == user_id).order_by(UserRole.assigned_at)
            )
            return [to_record(schemas.UserRoleAssignment, e, "user role") for e in res.scalars().all()]

        return await self._run("set user roles", op)

    # -------------------------
    # Resolution reads
    # -------------------------

    async def get_user_permissions(self, user_id: UUID) -> List[schemas.Permission]:
        """Distinct active permissions granted through the user's active roles."""
        async def op(session: AsyncSession) -> List[schemas.Permission]:
            res = await session.execute(self._granted_permissions(user_id).order_by(Permission.resource, Permission.action))
            return [to_record(schemas.Permission, p, "permission") for p in res.scalars().all()]

        return await self._run("get user permissions", op)

    async def get_candidate_permissions(self, user_id: UUID, resource: str, action: str) -> List[schemas.Permission]:
        """Granted permissions matching ``(resource, action)`` exactly (case-sensitive)."""
        async def op(session: AsyncSession) -> List[schemas.Permission]:
            res = await session.execute(
                self._granted_permissions(user_id).where(Permission.resource == resource, Permission.action == action)
            )
            # SQL collations may fold case; the match must not
            return [
                to_record(schemas.Permission, p, "permission")
                for p in res.scalars().all()
                if p.resource == resource and p.action == action
            ]

        return await self._run("get candidate permissions", op)

    # -------------------------
    # Helpers
    # -------------------------

    @staticmethod
    def _granted_permissions(user_id: UUID):
        granting = (
            select(RolePermission.permission_id)
            .join(Role, Role.id == RolePermission.role_id)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id, Role.is_active.is_(True))
        )
        return select(Permission).where(Permission.id.in_(granting), Permission.is_active.is_(True))

    @staticmethod
    def _with_permissions(role: Role, permissions: List[schemas.Permission]) -> schemas.RoleWithPermissions:
        base = to_record(schemas.Role, role, "role")
        return schemas.RoleWithPermissions(**base.model_dump(), permissions=permissions)

    @staticmethod
    async def _permissions_by_role(session: AsyncSession, role_ids: List[UUID]) -> Dict[UUID, List[schemas.Permission]]:
        if not role_ids:
            return {}
        res = await session.execute(
            select(RolePermission.role_id, Permission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(RolePermission.role_id.in_(role_ids))
            .order_by(Permission.resource, Permission.action)
        )
        out: Dict[UUID, List[schemas.Permission]] = defaultdict(list)
        for role_id, p in res.all():
            out[role_id].append(to_record(schemas.Permission, p, "permission"))
        return out

    @staticmethod
    async def _require_user(session: AsyncSession, user_id: UUID) -> None:
        res = await session.execute(select(User.id).where(User.id == user_id))
        if res.first() is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

    @staticmethod
    async def _require_role(session: AsyncSession, role_id: UUID) -> None:
        if await session.get(Role, role_id) is None:
            raise NotFoundError("Role not found", details={"role_id": str(role_id)})

    @staticmethod
    async def _require_roles(session: AsyncSession, role_ids: List[UUID]) -> None:
        if not role_ids:
            return
        res = await session.execute(select(Role.id).where(Role.id.in_(role_ids)))
        missing = set(role_ids) - set(res.scalars().all())
        if missing:
            raise NotFoundError("Role not found", details={"role_ids": sorted(str(m) for m in missing)})

    @staticmethod
    async def _require_permissions(session: AsyncSession, permission_ids: List[UUID]) -> None:
        if not permission_ids:
            return
        res = await session.execute(select(Permission.id).where(Permission.id.in_(permission_ids)))
        missing = set(permission_ids) - set(res.scalars().all())
        if missing:
            raise NotFoundError("Permission not found", details={"permission_ids": sorted(str(m) for m in missing)})
