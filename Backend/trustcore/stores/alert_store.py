"""Security alert store."""
from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trustcore.errors import ConflictError, NotFoundError
from trustcore.models.security import SecurityAlert
from trustcore.schemas import security as schemas
from trustcore.stores.base import StoreBase, to_record
from trustcore.stores.security_event_log import redact

logger = logging.getLogger(__name__)


class AlertStore(StoreBase):
    async def create_alert(self, data: schemas.SecurityAlertCreate) -> schemas.SecurityAlert:
        async def op(session: AsyncSession) -> schemas.SecurityAlert:
            now = self._clock()
            row = SecurityAlert(
                organization_id=data.organization_id,
                alert_type=data.alert_type.value,
                severity=data.severity.value,
                title=data.title,
                description=data.description,
                user_id=data.user_id,
                target_user_id=data.target_user_id,
                details=redact(dict(data.metadata)),
                is_resolved=False,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            await session.commit()
            logger.warning(
                "SECURITY_ALERT type=%s severity=%s org=%s target=%s",
                data.alert_type.value, data.severity.value, data.organization_id, data.target_user_id,
            )
            return to_record(schemas.SecurityAlert, row, "security alert")

        return await self._run("create security alert", op)

    async def find_alert(self, alert_id: UUID) -> Optional[schemas.SecurityAlert]:
        async def op(session: AsyncSession) -> Optional[schemas.SecurityAlert]:
            row = await session.get(SecurityAlert, alert_id)
            return to_record(schemas.SecurityAlert, row, "security alert") if row else None

        return await self._run("find security alert", op)

    async def list_unresolved_alerts(self, organization_id: UUID, limit: int = 50) -> List[schemas.SecurityAlert]:
        async def op(session: AsyncSession) -> List[schemas.SecurityAlert]:
            res = await session.execute(
                select(SecurityAlert)
                .where(SecurityAlert.organization_id == organization_id, SecurityAlert.is_resolved.is_(False))
                .order_by(SecurityAlert.created_at.desc())
                .limit(limit)
            )
            return [to_record(schemas.SecurityAlert, r, "security alert") for r in res.scalars().all()]

        return await self._run("list unresolved alerts", op)

    async def resolve_alert(
        self, alert_id: UUID, resolved_by: UUID, resolution_notes: Optional[str] = None
    ) -> schemas.SecurityAlert:
        """Mark an alert resolved. Resolution is terminal."""
        async def op(session: AsyncSession) -> schemas.SecurityAlert:
            now = self._clock()
            # conditional update so two concurrent resolvers cannot both succeed
            res = await session.execute(
                update(SecurityAlert)
                .where(SecurityAlert.id == alert_id, SecurityAlert.is_resolved.is_(False))
                .values(
                    is_resolved=True,
                    resolved_by=resolved_by,
                    resolved_at=now,
                    resolution_notes=resolution_notes,
                    updated_at=now,
                )
            )
            if res.rowcount == 0:
                existing = await session.get(SecurityAlert, alert_id)
                if existing is None:
                    raise NotFoundError("Security alert not found", details={"alert_id": str(alert_id)})
                raise ConflictError("Security alert is already resolved", details={"alert_id": str(alert_id)})
            await session.commit()
            row = await session.get(SecurityAlert, alert_id, populate_existing=True)
            return to_record(schemas.SecurityAlert, row, "security alert")

        return await self._run("resolve security alert", op)
