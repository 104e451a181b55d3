"""
Guarded security administration.

Every operation resolves the acting user's permission before touching any
store; a denial raises ``PermissionDeniedError`` and nothing is changed.
"""
from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from trustcore.errors import NotFoundError
from trustcore.ports import OrganizationDirectory
from trustcore.schemas.common import Page
from trustcore.schemas.notification import NotificationEffect
from trustcore.schemas.permission import Actions, Resources
from trustcore.schemas.security import (
    LockState,
    SecurityAlert,
    SecurityEvent,
    SecurityEventQuery,
    SecurityEventType,
    SecuritySettings,
    SecuritySettingsUpdate,
    SecurityStats,
    Severity,
)
from trustcore.services.lockout_service import LockoutService
from trustcore.services.permission_service import PermissionResolver
from trustcore.services.stats_service import SecurityStatsService
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.stores.security_policy_store import SecurityPolicyStore, coerce_settings_update

logger = logging.getLogger(__name__)


class SettingsChangeResult(BaseModel):
    settings: SecuritySettings
    effects: List[NotificationEffect] = Field(default_factory=list)


class SecurityAdminService:
    def __init__(
        self,
        resolver: PermissionResolver,
        policies: SecurityPolicyStore,
        events: SecurityEventLog,
        lockout: LockoutService,
        stats: SecurityStatsService,
        organizations: OrganizationDirectory,
    ):
        self.resolver = resolver
        self.policies = policies
        self.events = events
        self.lockout = lockout
        self.stats = stats
        self.organizations = organizations

    async def _require(self, actor_id: UUID, resource: str, action: str, organization_id: UUID) -> None:
        await self.resolver.require_permission(actor_id, resource, action, resource_organization_id=organization_id)

    # ---------- settings ----------

    async def get_security_settings(self, actor_id: UUID, organization_id: UUID) -> SecuritySettings:
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.READ, organization_id)
        return await self.policies.get_or_create_security_settings(organization_id)

    async def configure_security_settings(
        self,
        actor_id: UUID,
        organization_id: UUID,
        data: Union[SecuritySettingsUpdate, Mapping[str, Any]],
    ) -> SettingsChangeResult:
        """
        Apply a partial settings update. The returned notification effects
        are meant to be delivered once the caller has committed its own work.
        """
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.MANAGE, organization_id)
        if not await self.organizations.organization_exists(organization_id):
            raise NotFoundError("Organization not found", details={"organization_id": str(organization_id)})

        update = coerce_settings_update(data)
        previous = await self.policies.get_or_create_security_settings(organization_id)
        updated = await self.policies.update_security_settings(organization_id, update, actor_id=actor_id)

        changed_fields = sorted(update.changes())
        before = previous.model_dump(mode="json")
        after = updated.model_dump(mode="json")
        logger.info("Security settings updated org=%s by=%s fields=%s", organization_id, actor_id, changed_fields)

        await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.SECURITY_SETTINGS_CHANGED,
            severity=Severity.MEDIUM,
            description=f"Security settings updated by user {actor_id}",
            success=True,
            user_id=actor_id,
            metadata={
                "changed_fields": changed_fields,
                "previous_settings": {f: before.get(f) for f in changed_fields},
                "new_settings": {f: after.get(f) for f in changed_fields},
            },
        )

        effects = await self.lockout.admin_notifications(
            organization_id,
            updated,
            title="Security Settings Updated",
            message=f"Security settings have been updated by {actor_id}. Please review the changes.",
            metadata={"entity_type": "security_settings", "entity_id": str(organization_id)},
            exclude=actor_id,
        )
        return SettingsChangeResult(settings=updated, effects=effects)

    # ---------- monitoring ----------

    async def get_security_stats(self, actor_id: UUID, organization_id: UUID, days: int = 30) -> SecurityStats:
        await self._require(actor_id, Resources.SECURITY_EVENTS, Actions.READ, organization_id)
        return await self.stats.get_security_stats(organization_id, days)

    async def list_security_events(
        self, actor_id: UUID, organization_id: UUID, query: Optional[SecurityEventQuery] = None
    ) -> Page[SecurityEvent]:
        await self._require(actor_id, Resources.SECURITY_EVENTS, Actions.READ, organization_id)
        return await self.events.list_security_events(organization_id, query)

    # ---------- interventions ----------

    async def resolve_alert(
        self,
        actor_id: UUID,
        organization_id: UUID,
        alert_id: UUID,
        resolution_notes: Optional[str] = None,
    ) -> SecurityAlert:
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.MANAGE, organization_id)
        alert = await self.lockout.alerts.find_alert(alert_id)
        if alert is None or alert.organization_id != organization_id:
            raise NotFoundError("Security alert not found", details={"alert_id": str(alert_id)})
        return await self.lockout.resolve_alert(alert_id, actor_id, resolution_notes)

    async def block_ip(self, actor_id: UUID, organization_id: UUID, ip_address: str, reason: str) -> None:
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.MANAGE, organization_id)
        await self.lockout.block_ip(organization_id, ip_address, reason, actor_id=actor_id)

    async def unblock_ip(self, actor_id: UUID, organization_id: UUID, ip_address: str) -> None:
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.MANAGE, organization_id)
        await self.lockout.unblock_ip(organization_id, ip_address, actor_id=actor_id)

    async def unlock_account(
        self, actor_id: UUID, organization_id: UUID, user_id: UUID, reason: Optional[str] = None
    ) -> LockState:
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.MANAGE, organization_id)
        return await self.lockout.unlock_account(organization_id, user_id, actor_id, reason=reason)

    async def cleanup_old_events(self, actor_id: UUID, organization_id: UUID, retention_days: Optional[int] = None) -> int:
        """Delete events past the retention period; defaults to the organization's ``data_retention_days``."""
        await self._require(actor_id, Resources.SECURITY_SETTINGS, Actions.MANAGE, organization_id)
        if retention_days is None:
            settings = await self.policies.get_or_create_security_settings(organization_id)
            retention_days = settings.data_retention_days
        return await self.events.cleanup_old_events(organization_id, retention_days)
