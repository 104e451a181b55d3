"""Password history store: bounded list of previous password hashes per user."""
from __future__ import annotations

from typing import List
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from trustcore.models.security import PasswordHistory
from trustcore.stores.base import StoreBase


class PasswordHistoryStore(StoreBase):
    async def recent_hashes(self, user_id: UUID, limit: int) -> List[str]:
        """The ``limit`` most recent hashes, newest first."""
        if limit <= 0:
            return []

        async def op(session: AsyncSession) -> List[str]:
            res = await session.execute(
                select(PasswordHistory.password_hash)
                .where(PasswordHistory.user_id == user_id)
                .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id)
                .limit(limit)
            )
            return list(res.scalars().all())

        return await self._run("read password history", op)

    async def append(self, user_id: UUID, password_hash: str, keep: int) -> None:
        """Append a hash, then evict everything beyond the ``keep`` newest entries."""
        async def op(session: AsyncSession) -> None:
            session.add(PasswordHistory(user_id=user_id, password_hash=password_hash, created_at=self._clock()))
            await session.flush()
            res = await session.execute(
                select(PasswordHistory.id)
                .where(PasswordHistory.user_id == user_id)
                .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id)
                .offset(max(keep, 0))
            )
            stale = list(res.scalars().all())
            if stale:
                await session.execute(delete(PasswordHistory).where(PasswordHistory.id.in_(stale)))
            await session.commit()

        await self._run("save password history", op)
