"""SQL adapters for the user and organization directory ports."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trustcore.errors import NotFoundError
from trustcore.models.directory import Organization, User
from trustcore.schemas.directory import UserRecord, UserRole
from trustcore.stores.base import StoreBase, to_record


class SqlUserDirectory(StoreBase):
    async def get_user(self, user_id: UUID) -> Optional[UserRecord]:
        async def op(session: AsyncSession) -> Optional[UserRecord]:
            u = await session.get(User, user_id)
            return to_record(UserRecord, u, "user") if u else None

        return await self._run("get user", op)

    async def find_by_email(self, organization_id: UUID, email: str) -> Optional[UserRecord]:
        async def op(session: AsyncSession) -> Optional[UserRecord]:
            res = await session.execute(
                select(User).where(
                    User.org_id == organization_id,
                    func.lower(User.email) == email.strip().lower(),
                )
            )
            u = res.scalars().first()
            return to_record(UserRecord, u, "user") if u else None

        return await self._run("find user by email", op)

    async def list_admins(self, organization_id: UUID) -> List[UserRecord]:
        async def op(session: AsyncSession) -> List[UserRecord]:
            res = await session.execute(
                select(User)
                .where(User.org_id == organization_id, User.role == UserRole.ADMIN.value, User.is_active.is_(True))
                .order_by(User.created_at)
            )
            return [to_record(UserRecord, u, "user") for u in res.scalars().all()]

        return await self._run("list organization admins", op)

    async def get_user_names(self, user_ids: Iterable[UUID]) -> Dict[UUID, str]:
        ids = list(user_ids)
        if not ids:
            return {}

        async def op(session: AsyncSession) -> Dict[UUID, str]:
            res = await session.execute(select(User.id, User.name).where(User.id.in_(ids)))
            return {user_id: name for user_id, name in res.all()}

        return await self._run("get user names", op)

    async def update_password_hash(self, user_id: UUID, password_hash: str, changed_at: datetime) -> None:
        async def op(session: AsyncSession) -> None:
            res = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(password_hash=password_hash, password_changed_at=changed_at, updated_at=changed_at)
            )
            if res.rowcount == 0:
                raise NotFoundError("User not found", details={"user_id": str(user_id)})
            await session.commit()

        await self._run("update password hash", op)

    async def update_last_login(self, user_id: UUID, logged_in_at: datetime) -> None:
        async def op(session: AsyncSession) -> None:
            await session.execute(update(User).where(User.id == user_id).values(last_login_at=logged_in_at))
            await session.commit()

        await self._run("update last login", op)


class SqlOrganizationDirectory(StoreBase):
    async def organization_exists(self, organization_id: UUID) -> bool:
        async def op(session: AsyncSession) -> bool:
            res = await session.execute(
                select(Organization.id).where(Organization.id == organization_id, Organization.is_active.is_(True))
            )
            return res.first() is not None

        return await self._run("check organization", op)
