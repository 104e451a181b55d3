"""
Security event log (SQLAlchemy async).

Events are written to:
- application logs (INFO, WARNING for failures and high/critical severity)
- the `security_events` table

The table is append-only; the retention cleanup is the single deletion path.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from trustcore.config import get_settings
from trustcore.errors import TrustCoreError, ValidationError
from trustcore.models.security import SecurityEvent
from trustcore.schemas import security as schemas
from trustcore.schemas.common import Page
from trustcore.schemas.security import (
    COMMON_METADATA_KEYS,
    EVENT_METADATA_KEYS,
    MIN_RETENTION_DAYS,
    SecurityEventType,
    Severity,
)
from trustcore.stores.base import StoreBase, to_record
from trustcore.utils.time import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

REDACT_KEYS = {
    "password", "pass", "secret", "token",
    "access_token", "refresh_token",
    "authorization", "api_key", "apikey",
    "client_secret", "password_hash", "current_password", "new_password",
}

_SORT_COLUMNS = {
    "event_type": SecurityEvent.event_type,
    "severity": SecurityEvent.severity,
    "user_id": SecurityEvent.user_id,
    "success": SecurityEvent.success,
    "created_at": SecurityEvent.created_at,
}


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if isinstance(k, str) and k.lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, list):
        return [redact(x) for x in obj]
    return obj


def validate_event_metadata(event_type: SecurityEventType, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Check metadata against the key schema of ``event_type`` and redact secrets."""
    metadata = dict(metadata or {})
    allowed = EVENT_METADATA_KEYS[SecurityEventType(event_type)] | COMMON_METADATA_KEYS
    unknown = sorted(k for k in metadata if k not in allowed)
    if unknown:
        raise ValidationError(
            f"Unknown metadata keys for {SecurityEventType(event_type).value}: {', '.join(unknown)}",
            details={"fields": {k: "not allowed" for k in unknown}},
        )
    bad_values = []
    for k, v in metadata.items():
        try:
            json.dumps(v)
        except (TypeError, ValueError):
            bad_values.append(k)
    if bad_values:
        raise ValidationError(
            f"Metadata values must be JSON serializable: {', '.join(sorted(bad_values))}",
            details={"fields": {k: "not JSON serializable" for k in bad_values}},
        )
    return redact(metadata)


class EventWindow(NamedTuple):
    count: int
    first_at: Optional[datetime]
    last_at: Optional[datetime]


class SecurityEventLog(StoreBase):
    def __init__(
        self,
        session_factory,
        timeout: Optional[float] = None,
        clock: Clock = utc_now,
        cleanup_batch_size: Optional[int] = None,
    ):
        super().__init__(session_factory, timeout=timeout, clock=clock)
        self._batch_size = cleanup_batch_size or get_settings().cleanup_batch_size

    # -------------------------
    # Writes
    # -------------------------

    async def create_security_event(self, data: schemas.SecurityEventCreate) -> schemas.SecurityEvent:
        """Append an event. Raises ``ValidationError`` for bad metadata, ``RepositoryError`` on storage failure."""
        metadata = validate_event_metadata(data.event_type, data.metadata)

        async def op(session: AsyncSession) -> schemas.SecurityEvent:
            row = SecurityEvent(
                organization_id=data.organization_id,
                event_type=data.event_type.value,
                severity=data.severity.value,
                user_id=data.user_id,
                target_user_id=data.target_user_id,
                description=data.description,
                details=metadata,
                ip_address=data.ip_address,
                user_agent=data.user_agent,
                success=data.success,
                created_at=self._clock(),
            )
            session.add(row)
            await session.commit()
            return to_record(schemas.SecurityEvent, row, "security event")

        event = await self._run("create security event", op)

        # logged only once stored; a failed insert is logged by _run
        log_level = (
            logging.WARNING
            if not data.success or data.severity in (Severity.HIGH, Severity.CRITICAL)
            else logging.INFO
        )
        logger.log(
            log_level,
            "SECURITY_EVENT id=%s type=%s severity=%s org=%s user=%s target=%s success=%s ip=%s",
            event.id, data.event_type.value, data.severity.value, data.organization_id, data.user_id,
            data.target_user_id, data.success, data.ip_address,
        )
        return event

    async def record_event(
        self,
        organization_id: UUID,
        event_type: SecurityEventType,
        severity: Severity,
        description: str,
        success: bool,
        user_id: Optional[UUID] = None,
        target_user_id: Optional[UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[schemas.SecurityEvent]:
        """Best-effort append used after a primary effect has happened. Failures are logged, never raised."""
        try:
            return await self.create_security_event(
                schemas.SecurityEventCreate(
                    organization_id=organization_id,
                    event_type=event_type,
                    severity=severity,
                    description=description,
                    success=success,
                    user_id=user_id,
                    target_user_id=target_user_id,
                    metadata=metadata or {},
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        except (TrustCoreError, PydanticValidationError):
            logger.exception("Failed to record security event type=%s org=%s", event_type, organization_id)
            return None

    async def cleanup_old_events(self, organization_id: UUID, retention_days: int) -> int:
        """Delete events older than ``retention_days`` in batches. Returns the number deleted."""
        if retention_days < MIN_RETENTION_DAYS:
            raise ValidationError(
                f"Retention period must be at least {MIN_RETENTION_DAYS} days",
                details={"retention_days": retention_days},
            )
        cutoff = self._clock() - timedelta(days=retention_days)
        batch_size = self._batch_size

        async def delete_batch(session: AsyncSession) -> int:
            res = await session.execute(
                select(SecurityEvent.id)
                .where(SecurityEvent.organization_id == organization_id, SecurityEvent.created_at < cutoff)
                .limit(batch_size)
            )
            ids = list(res.scalars().all())
            if not ids:
                return 0
            await session.execute(delete(SecurityEvent).where(SecurityEvent.id.in_(ids)))
            await session.commit()
            return len(ids)

        total = 0
        while True:
            deleted = await self._run("cleanup old security events", delete_batch)
            total += deleted
            if deleted < batch_size:
                break
        logger.info("Security event cleanup org=%s retention_days=%s deleted=%s", organization_id, retention_days, total)
        return total

    # -------------------------
    # Reads
    # -------------------------

    async def find_security_event_by_id(self, event_id: UUID) -> Optional[schemas.SecurityEvent]:
        async def op(session: AsyncSession) -> Optional[schemas.SecurityEvent]:
            row = await session.get(SecurityEvent, event_id)
            return to_record(schemas.SecurityEvent, row, "security event") if row else None

        return await self._run("find security event", op)

    async def list_security_events(
        self, organization_id: UUID, query: Optional[schemas.SecurityEventQuery] = None
    ) -> Page[schemas.SecurityEvent]:
        query = query or schemas.SecurityEventQuery()
        conditions = [SecurityEvent.organization_id == organization_id]
        if query.keyword:
            like = f"%{query.keyword}%"
            conditions.append(or_(SecurityEvent.description.ilike(like), SecurityEvent.ip_address.ilike(like)))
        if query.event_type:
            conditions.append(SecurityEvent.event_type == query.event_type.value)
        if query.severity:
            conditions.append(SecurityEvent.severity == query.severity.value)
        if query.user_id:
            conditions.append(SecurityEvent.user_id == query.user_id)
        if query.target_user_id:
            conditions.append(SecurityEvent.target_user_id == query.target_user_id)
        if query.success is not None:
            conditions.append(SecurityEvent.success.is_(query.success))
        if query.ip_address:
            conditions.append(SecurityEvent.ip_address == query.ip_address)
        if query.created_after:
            conditions.append(SecurityEvent.created_at >= ensure_utc(query.created_after))
        if query.created_before:
            conditions.append(SecurityEvent.created_at <= ensure_utc(query.created_before))

        column = _SORT_COLUMNS[query.sort_by]
        order = column.asc() if query.sort_order == "asc" else column.desc()

        async def op(session: AsyncSession) -> Page[schemas.SecurityEvent]:
            total = await session.scalar(select(func.count()).select_from(SecurityEvent).where(*conditions))
            res = await session.execute(
                select(SecurityEvent)
                .where(*conditions)
                .order_by(order, SecurityEvent.id)
                .offset(query.offset)
                .limit(query.limit)
            )
            items = [to_record(schemas.SecurityEvent, r, "security event") for r in res.scalars().all()]
            return Page[schemas.SecurityEvent](items=items, count=total or 0, page=query.page, limit=query.limit)

        return await self._run("list security events", op)

    async def find_events_for_user(
        self,
        organization_id: UUID,
        user_id: UUID,
        event_types: Iterable[SecurityEventType],
        since: Optional[datetime] = None,
        as_target: bool = False,
        limit: Optional[int] = None,
    ) -> List[schemas.SecurityEvent]:
        """Events for a user (as actor, or as target), newest first."""
        types = [SecurityEventType(t).value for t in event_types]
        user_column = SecurityEvent.target_user_id if as_target else SecurityEvent.user_id

        async def op(session: AsyncSession) -> List[schemas.SecurityEvent]:
            stmt = select(SecurityEvent).where(
                SecurityEvent.organization_id == organization_id,
                user_column == user_id,
                SecurityEvent.event_type.in_(types),
            )
            if since is not None:
                stmt = stmt.where(SecurityEvent.created_at >= ensure_utc(since))
            stmt = stmt.order_by(SecurityEvent.created_at.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            res = await session.execute(stmt)
            return [to_record(schemas.SecurityEvent, r, "security event") for r in res.scalars().all()]

        return await self._run("find events for user", op)

    async def find_recent_events(
        self,
        organization_id: UUID,
        event_types: Iterable[SecurityEventType],
        since: datetime,
        limit: int = 100,
    ) -> List[schemas.SecurityEvent]:
        types = [SecurityEventType(t).value for t in event_types]

        async def op(session: AsyncSession) -> List[schemas.SecurityEvent]:
            res = await session.execute(
                select(SecurityEvent)
                .where(
                    SecurityEvent.organization_id == organization_id,
                    SecurityEvent.event_type.in_(types),
                    SecurityEvent.created_at >= ensure_utc(since),
                )
                .order_by(SecurityEvent.created_at.desc())
                .limit(limit)
            )
            return [to_record(schemas.SecurityEvent, r, "security event") for r in res.scalars().all()]

        return await self._run("find recent security events", op)

    async def summarize_events(
        self,
        organization_id: UUID,
        event_types: Iterable[SecurityEventType],
        user_id: Optional[UUID] = None,
        since: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> EventWindow:
        """
        Count plus first/last timestamps of matching events.
        ``since`` is inclusive, ``after`` exclusive.
        """
        types = [SecurityEventType(t).value for t in event_types]

        async def op(session: AsyncSession) -> EventWindow:
            stmt = select(
                func.count(SecurityEvent.id),
                func.min(SecurityEvent.created_at),
                func.max(SecurityEvent.created_at),
            ).where(SecurityEvent.organization_id == organization_id, SecurityEvent.event_type.in_(types))
            if user_id is not None:
                stmt = stmt.where(SecurityEvent.user_id == user_id)
            if since is not None:
                stmt = stmt.where(SecurityEvent.created_at >= ensure_utc(since))
            if after is not None:
                stmt = stmt.where(SecurityEvent.created_at > ensure_utc(after))
            count, first_at, last_at = (await session.execute(stmt)).one()
            return EventWindow(count or 0, ensure_utc(first_at), ensure_utc(last_at))

        return await self._run("summarize security events", op)

    async def count_events(
        self,
        organization_id: UUID,
        since: Optional[datetime] = None,
        event_types: Optional[Iterable[SecurityEventType]] = None,
        severities: Optional[Iterable[Severity]] = None,
        user_id: Optional[UUID] = None,
        success: Optional[bool] = None,
    ) -> int:
        conditions = [SecurityEvent.organization_id == organization_id]
        if since is not None:
            conditions.append(SecurityEvent.created_at >= ensure_utc(since))
        if event_types is not None:
            conditions.append(SecurityEvent.event_type.in_([SecurityEventType(t).value for t in event_types]))
        if severities is not None:
            conditions.append(SecurityEvent.severity.in_([Severity(s).value for s in severities]))
        if user_id is not None:
            conditions.append(SecurityEvent.user_id == user_id)
        if success is not None:
            conditions.append(SecurityEvent.success.is_(success))

        async def op(session: AsyncSession) -> int:
            return (await session.scalar(select(func.count()).select_from(SecurityEvent).where(*conditions))) or 0

        return await self._run("count security events", op)

    # -------------------------
    # Aggregates (statistics)
    # -------------------------

    async def count_by(self, organization_id: UUID, since: datetime, field: str) -> Dict[str, int]:
        column = {"event_type": SecurityEvent.event_type, "severity": SecurityEvent.severity}[field]

        async def op(session: AsyncSession) -> Dict[str, int]:
            res = await session.execute(
                select(column, func.count())
                .where(SecurityEvent.organization_id == organization_id, SecurityEvent.created_at >= ensure_utc(since))
                .group_by(column)
            )
            return {str(key): count for key, count in res.all()}

        return await self._run(f"count security events by {field}", op)

    async def daily_counts(self, organization_id: UUID, since: datetime) -> List[Tuple[str, int, int, int]]:
        """(date, events, failed logins, suspicious activities) per UTC day, oldest first."""
        day = func.date(SecurityEvent.created_at)
        failed = func.sum(case((SecurityEvent.event_type == SecurityEventType.LOGIN_FAILED.value, 1), else_=0))
        suspicious = func.sum(
            case((SecurityEvent.event_type == SecurityEventType.SUSPICIOUS_ACTIVITY.value, 1), else_=0)
        )

        async def op(session: AsyncSession) -> List[Tuple[str, int, int, int]]:
            res = await session.execute(
                select(day, func.count(), failed, suspicious)
                .where(SecurityEvent.organization_id == organization_id, SecurityEvent.created_at >= ensure_utc(since))
                .group_by(day)
                .order_by(day)
            )
            return [(str(d), int(n), int(f or 0), int(s or 0)) for d, n, f, s in res.all()]

        return await self._run("daily security event counts", op)

    async def top_users(self, organization_id: UUID, since: datetime, limit: int) -> List[Tuple[UUID, int, datetime]]:
        async def op(session: AsyncSession) -> List[Tuple[UUID, int, datetime]]:
            n = func.count()
            res = await session.execute(
                select(SecurityEvent.user_id, n, func.max(SecurityEvent.created_at))
                .where(
                    SecurityEvent.organization_id == organization_id,
                    SecurityEvent.created_at >= ensure_utc(since),
                    SecurityEvent.user_id.is_not(None),
                )
                .group_by(SecurityEvent.user_id)
                .order_by(n.desc(), SecurityEvent.user_id)
                .limit(limit)
            )
            return [(user_id, count, ensure_utc(last)) for user_id, count, last in res.all()]

        return await self._run("top users by security events", op)

    async def top_ips(self, organization_id: UUID, since: datetime, limit: int) -> List[Tuple[str, int, datetime]]:
        async def op(session: AsyncSession) -> List[Tuple[str, int, datetime]]:
            n = func.count()
            res = await session.execute(
                select(SecurityEvent.ip_address, n, func.max(SecurityEvent.created_at))
                .where(
                    SecurityEvent.organization_id == organization_id,
                    SecurityEvent.created_at >= ensure_utc(since),
                    SecurityEvent.ip_address.is_not(None),
                )
                .group_by(SecurityEvent.ip_address)
                .order_by(n.desc(), SecurityEvent.ip_address)
                .limit(limit)
            )
            return [(ip, count, ensure_utc(last)) for ip, count, last in res.all()]

        return await self._run("top ips by security events", op)
