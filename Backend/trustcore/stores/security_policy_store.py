"""Security policy store: per-organization settings and IP allow/block lists."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trustcore.errors import ConflictError, NotFoundError, ValidationError
from trustcore.models.security import IPAccessEntry, SecuritySettings
from trustcore.schemas import security as schemas
from trustcore.schemas.security import IPListType
from trustcore.stores.base import StoreBase, row_to_dict, to_record
from trustcore.utils.security import email_domain, ip_matches, normalize_ip_entry
from trustcore.utils.time import ensure_utc

logger = logging.getLogger(__name__)

SETTINGS_LIST_REASON = "Configured via security settings"

_IP_LIST_FIELDS = {
    "ip_allowlist": IPListType.ALLOW,
    "ip_blocklist": IPListType.BLOCK,
}


def _validation_error(e: PydanticValidationError, what: str) -> ValidationError:
    fields: Dict[str, str] = {}
    for err in e.errors(include_url=False):
        loc = ".".join(str(part) for part in err["loc"]) or "__root__"
        fields[loc] = err["msg"]
    return ValidationError(
        f"Invalid {what}: {', '.join(sorted(fields))}",
        details={"fields": fields},
        cause=e,
    )


def coerce_settings_update(
    data: Union[schemas.SecuritySettingsUpdate, Mapping[str, Any]],
) -> schemas.SecuritySettingsUpdate:
    if isinstance(data, schemas.SecuritySettingsUpdate):
        return data
    try:
        return schemas.SecuritySettingsUpdate.model_validate(dict(data))
    except PydanticValidationError as e:
        raise _validation_error(e, "security settings")


class SecurityPolicyStore(StoreBase):
    """
    Settings are created lazily with defaults. This store does not authorize:
    writes go through ``SecurityAdminService``, which requires
    ``security_settings:manage``.
    """

    # -------------------------
    # Settings
    # -------------------------

    async def get_security_settings(self, organization_id: UUID) -> Optional[schemas.SecuritySettings]:
        async def op(session: AsyncSession) -> Optional[schemas.SecuritySettings]:
            row = await self._load_row(session, organization_id)
            if row is None:
                return None
            return await self._to_settings(session, row)

        return await self._run("get security settings", op)

    async def create_default_security_settings(self, organization_id: UUID) -> schemas.SecuritySettings:
        async def op(session: AsyncSession) -> schemas.SecuritySettings:
            row = self._default_row(organization_id)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError(
                    "Security settings already exist for organization",
                    details={"organization_id": str(organization_id)},
                    cause=e,
                )
            logger.info("Created default security settings for org=%s", organization_id)
            return await self._to_settings(session, row)

        return await self._run("create default security settings", op)

    async def get_or_create_security_settings(self, organization_id: UUID) -> schemas.SecuritySettings:
        settings = await self.get_security_settings(organization_id)
        if settings is not None:
            return settings
        try:
            return await self.create_default_security_settings(organization_id)
        except ConflictError:
            # created concurrently
            settings = await self.get_security_settings(organization_id)
            if settings is None:
                raise
            return settings

    async def update_security_settings(
        self,
        organization_id: UUID,
        data: Union[schemas.SecuritySettingsUpdate, Mapping[str, Any]],
        actor_id: Optional[UUID] = None,
    ) -> schemas.SecuritySettings:
        """Merge the provided fields into the stored settings. IP lists given here replace the stored entries."""
        update = coerce_settings_update(data)
        changes = update.changes()
        await self.get_or_create_security_settings(organization_id)

        async def op(session: AsyncSession) -> schemas.SecuritySettings:
            row = await self._load_row(session, organization_id)
            if row is None:
                raise NotFoundError("Security settings not found", details={"organization_id": str(organization_id)})
            now = self._clock()

            for field, list_type in _IP_LIST_FIELDS.items():
                if field in changes:
                    await self._replace_ip_entries(session, organization_id, list_type, changes.pop(field), actor_id, now)

            for field, value in changes.items():
                setattr(row, field, value)
            row.updated_at = now
            await session.commit()
            return await self._to_settings(session, row)

        return await self._run("update security settings", op)

    # -------------------------
    # IP lists
    # -------------------------

    async def list_ip_entries(
        self, organization_id: UUID, list_type: Optional[IPListType] = None
    ) -> List[schemas.IPAccessEntry]:
        async def op(session: AsyncSession) -> List[schemas.IPAccessEntry]:
            rows = await self._load_entries(session, organization_id, list_type)
            return [to_record(schemas.IPAccessEntry, r, "ip access entry") for r in rows]

        return await self._run("list ip entries", op)

    async def add_ip_entry(
        self,
        organization_id: UUID,
        ip_address: str,
        list_type: IPListType,
        reason: str,
        created_by: Optional[UUID] = None,
    ) -> schemas.IPAccessEntry:
        entry = self._normalize(ip_address)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for IP list entries", details={"fields": {"reason": "required"}})
        list_type = IPListType(list_type)

        async def op(session: AsyncSession) -> schemas.IPAccessEntry:
            existing = await session.execute(
                select(IPAccessEntry.id).where(
                    IPAccessEntry.organization_id == organization_id,
                    IPAccessEntry.ip_address == entry,
                    IPAccessEntry.list_type == list_type.value,
                )
            )
            if existing.first() is not None:
                raise ConflictError(
                    f"IP address {entry} is already on the {list_type.value} list",
                    details={"ip_address": entry, "list_type": list_type.value},
                )
            row = IPAccessEntry(
                organization_id=organization_id,
                ip_address=entry,
                list_type=list_type.value,
                reason=reason.strip(),
                created_by=created_by,
                created_at=self._clock(),
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError(f"IP address {entry} is already on the {list_type.value} list", cause=e)
            return to_record(schemas.IPAccessEntry, row, "ip access entry")

        return await self._run("add ip entry", op)

    async def remove_ip_entry(self, organization_id: UUID, ip_address: str, list_type: IPListType) -> None:
        entry = self._normalize(ip_address)
        list_type = IPListType(list_type)

        async def op(session: AsyncSession) -> None:
            res = await session.execute(
                delete(IPAccessEntry).where(
                    IPAccessEntry.organization_id == organization_id,
                    IPAccessEntry.ip_address == entry,
                    IPAccessEntry.list_type == list_type.value,
                )
            )
            if res.rowcount == 0:
                raise NotFoundError(
                    f"IP address {entry} is not on the {list_type.value} list",
                    details={"ip_address": entry, "list_type": list_type.value},
                )
            await session.commit()

        await self._run("remove ip entry", op)

    async def is_ip_blocked(self, organization_id: UUID, ip_address: str) -> bool:
        """
        Deny-first: any block entry match blocks. Otherwise, when an allowlist
        exists, addresses outside it are blocked.
        """
        async def op(session: AsyncSession) -> bool:
            rows = await self._load_entries(session, organization_id, None)
            blocklist = [r.ip_address for r in rows if r.list_type == IPListType.BLOCK.value]
            allowlist = [r.ip_address for r in rows if r.list_type == IPListType.ALLOW.value]
            if any(ip_matches(ip_address, e) for e in blocklist):
                return True
            if allowlist and not any(ip_matches(ip_address, e) for e in allowlist):
                return True
            return False

        return await self._run("check ip blocked", op)

    # -------------------------
    # Policy checks
    # -------------------------

    async def is_session_expired(self, organization_id: UUID, last_activity: datetime) -> bool:
        settings = await self.get_or_create_security_settings(organization_id)
        idle = self._clock() - ensure_utc(last_activity)
        return idle > timedelta(minutes=settings.session_timeout_minutes)

    async def is_email_domain_permitted(self, organization_id: UUID, email: str) -> bool:
        settings = await self.get_or_create_security_settings(organization_id)
        domain = email_domain(email)
        if domain in settings.blocked_email_domains:
            return False
        if settings.allowed_email_domains and domain not in settings.allowed_email_domains:
            return False
        return True

    async def is_password_expired(self, organization_id: UUID, password_changed_at: Optional[datetime]) -> bool:
        settings = await self.get_or_create_security_settings(organization_id)
        if settings.password_expiration_days is None or password_changed_at is None:
            return False
        age = self._clock() - ensure_utc(password_changed_at)
        return age > timedelta(days=settings.password_expiration_days)

    # -------------------------
    # Helpers
    # -------------------------

    @staticmethod
    def _normalize(ip_address: str) -> str:
        try:
            return normalize_ip_entry(ip_address)
        except (ValueError, AttributeError):
            raise ValidationError(
                f"Invalid IP address: {ip_address}",
                details={"fields": {"ip_address": "must be an IPv4/IPv6 address or network"}},
            )

    def _default_row(self, organization_id: UUID) -> SecuritySettings:
        now = self._clock()
        return SecuritySettings(
            organization_id=organization_id,
            password_min_length=8,
            password_require_uppercase=True,
            password_require_lowercase=True,
            password_require_numbers=True,
            password_require_special_chars=False,
            password_expiration_days=None,
            password_history_count=0,
            max_login_attempts=5,
            lockout_duration_minutes=30,
            login_attempt_window_minutes=None,
            session_timeout_minutes=24 * 60,
            two_factor_required=False,
            allowed_email_domains=[],
            blocked_email_domains=[],
            data_retention_days=365,
            audit_log_enabled=True,
            encryption_at_rest=True,
            security_notifications=True,
            maintenance_mode=False,
            maintenance_message=None,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    async def _load_row(session: AsyncSession, organization_id: UUID) -> Optional[SecuritySettings]:
        res = await session.execute(select(SecuritySettings).where(SecuritySettings.organization_id == organization_id))
        return res.scalars().first()

    @staticmethod
    async def _load_entries(
        session: AsyncSession, organization_id: UUID, list_type: Optional[IPListType]
    ) -> List[IPAccessEntry]:
        stmt = select(IPAccessEntry).where(IPAccessEntry.organization_id == organization_id)
        if list_type is not None:
            stmt = stmt.where(IPAccessEntry.list_type == IPListType(list_type).value)
        res = await session.execute(stmt.order_by(IPAccessEntry.created_at, IPAccessEntry.ip_address))
        return list(res.scalars().all())

    async def _to_settings(self, session: AsyncSession, row: SecuritySettings) -> schemas.SecuritySettings:
        entries = await self._load_entries(session, row.organization_id, None)
        data = row_to_dict(row)
        data["allowed_email_domains"] = data.get("allowed_email_domains") or []
        data["blocked_email_domains"] = data.get("blocked_email_domains") or []
        data["ip_allowlist"] = [e.ip_address for e in entries if e.list_type == IPListType.ALLOW.value]
        data["ip_blocklist"] = [e.ip_address for e in entries if e.list_type == IPListType.BLOCK.value]
        return to_record(schemas.SecuritySettings, data, "security settings")

    @staticmethod
    async def _replace_ip_entries(
        session: AsyncSession,
        organization_id: UUID,
        list_type: IPListType,
        addresses: List[str],
        actor_id: Optional[UUID],
        now: datetime,
    ) -> None:
        res = await session.execute(
            select(IPAccessEntry.ip_address).where(
                IPAccessEntry.organization_id == organization_id,
                IPAccessEntry.list_type == list_type.value,
            )
        )
        current = set(res.scalars().all())
        stale = current - set(addresses)
        if stale:
            await session.execute(
                delete(IPAccessEntry).where(
                    IPAccessEntry.organization_id == organization_id,
                    IPAccessEntry.list_type == list_type.value,
                    IPAccessEntry.ip_address.in_(stale),
                )
            )
        session.add_all(
            IPAccessEntry(
                organization_id=organization_id,
                ip_address=address,
                list_type=list_type.value,
                reason=SETTINGS_LIST_REASON,
                created_by=actor_id,
                created_at=now,
            )
            for address in addresses
            if address not in current
        )
