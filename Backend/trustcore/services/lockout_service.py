"""
Lockout and alerting engine.

Lock state is never cached: it is recomputed from the security event log on
every call. Failures are counted after the most recent reset marker, which
is either a ``login_success`` of the user or an ``account_unlocked``
activation targeting the user.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field

from trustcore.errors import ConflictError, NotFoundError, TrustCoreError
from trustcore.ports import UserDirectory
from trustcore.schemas.notification import NotificationEffect
from trustcore.schemas.security import (
    ACCOUNT_UNLOCKED_ACTION,
    AlertType,
    IPListType,
    LockState,
    SecurityAlert,
    SecurityAlertCreate,
    SecurityEvent,
    SecurityEventCreate,
    SecurityEventType,
    SecuritySettings,
    Severity,
)
from trustcore.stores.alert_store import AlertStore
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.stores.security_policy_store import SecurityPolicyStore
from trustcore.utils.time import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Per-process: failed-login bookkeeping for one user runs one at a time across
# all LockoutService instances. Entries go away once no caller holds them.
_user_locks: "weakref.WeakValueDictionary[Tuple[UUID, UUID], asyncio.Lock]" = weakref.WeakValueDictionary()


def _user_lock(organization_id: UUID, user_id: UUID) -> asyncio.Lock:
    key = (organization_id, user_id)
    lock = _user_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[key] = lock
    return lock


class LoginFailureOutcome(BaseModel):
    lock_state: LockState
    newly_locked: bool = False
    # False when the account was already locked and the attempt was not counted
    recorded: bool = True
    alert: Optional[SecurityAlert] = None
    effects: List[NotificationEffect] = Field(default_factory=list)


class LockoutService:
    def __init__(
        self,
        policies: SecurityPolicyStore,
        events: SecurityEventLog,
        alerts: AlertStore,
        users: UserDirectory,
        clock: Clock = utc_now,
    ):
        self.policies = policies
        self.events = events
        self.alerts = alerts
        self.users = users
        self._clock = clock

    # ---------- lock state ----------

    async def get_lock_state(
        self, organization_id: UUID, user_id: UUID, settings: Optional[SecuritySettings] = None
    ) -> LockState:
        settings = settings or await self.policies.get_or_create_security_settings(organization_id)
        now = self._clock()
        duration = timedelta(minutes=settings.lockout_duration_minutes)
        window = timedelta(minutes=settings.attempt_window_minutes)
        reset_at = await self._last_reset(organization_id, user_id, since=now - max(window, duration))

        failures = await self.events.summarize_events(
            organization_id, [SecurityEventType.LOGIN_FAILED], user_id=user_id, since=now - window, after=reset_at
        )

        locked_until: Optional[datetime] = None
        if settings.shares_lockout_window:
            if failures.count >= settings.max_login_attempts and failures.first_at is not None:
                locked_until = failures.first_at + duration
        else:
            locks = await self.events.summarize_events(
                organization_id, [SecurityEventType.LOGIN_LOCKED], user_id=user_id, since=now - duration, after=reset_at
            )
            if locks.count and locks.last_at is not None:
                locked_until = locks.last_at + duration

        locked = locked_until is not None and locked_until > now
        return LockState(
            locked=locked,
            failed_attempts=failures.count,
            remaining_attempts=0 if locked else max(settings.max_login_attempts - failures.count, 0),
            locked_until=locked_until if locked else None,
        )

    async def _last_reset(self, organization_id: UUID, user_id: UUID, since: datetime) -> Optional[datetime]:
        success = await self.events.summarize_events(
            organization_id, [SecurityEventType.LOGIN_SUCCESS], user_id=user_id, since=since
        )
        activations = await self.events.find_events_for_user(
            organization_id, user_id, [SecurityEventType.USER_ACTIVATED], since=since, as_target=True
        )
        unlocked_at = next(
            (e.created_at for e in activations if e.metadata.get("action") == ACCOUNT_UNLOCKED_ACTION), None
        )
        markers = [t for t in (success.last_at, unlocked_at) if t is not None]
        return max(markers) if markers else None

    # ---------- login outcomes ----------

    async def record_failed_login(
        self,
        organization_id: UUID,
        user_id: UUID,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LoginFailureOutcome:
        """
        Append a ``login_failed`` event and recompute the lock state. On the
        transition to locked, emit ``login_locked`` and a
        ``multiple_failed_logins`` alert, and return admin notifications.

        Calls for the same user are serialized within the process. An attempt
        arriving while the account is already locked is not counted and comes
        back with ``recorded=False``.
        """
        settings = await self.policies.get_or_create_security_settings(organization_id)
        async with _user_lock(organization_id, user_id):
            before = await self.get_lock_state(organization_id, user_id, settings)
            if before.locked:
                return LoginFailureOutcome(lock_state=before, recorded=False)

            event_metadata = dict(metadata or {})
            event_metadata.setdefault("attempt", before.failed_attempts + 1)
            event_metadata.setdefault("max_attempts", settings.max_login_attempts)
            await self.events.create_security_event(
                SecurityEventCreate(
                    organization_id=organization_id,
                    event_type=SecurityEventType.LOGIN_FAILED,
                    severity=Severity.MEDIUM if before.remaining_attempts <= 1 else Severity.LOW,
                    user_id=user_id,
                    description="Failed login attempt",
                    metadata=event_metadata,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                )
            )

            after = await self.get_lock_state(organization_id, user_id, settings)
            if settings.shares_lockout_window:
                threshold_reached = after.locked
            else:
                threshold_reached = after.failed_attempts >= settings.max_login_attempts
            if not threshold_reached:
                return LoginFailureOutcome(lock_state=after)
            if await self._lock_already_recorded(organization_id, user_id, settings, after):
                return LoginFailureOutcome(lock_state=after)

            return await self._lock(organization_id, user_id, settings, after, ip_address, user_agent)

    async def _lock_already_recorded(
        self, organization_id: UUID, user_id: UUID, settings: SecuritySettings, state: LockState
    ) -> bool:
        """True when another worker already emitted ``login_locked`` for this lock."""
        if not settings.shares_lockout_window:
            # split window: the state is locked only once a login_locked event exists
            return state.locked
        if state.locked_until is None:
            return False
        since = self._clock() - timedelta(minutes=settings.lockout_duration_minutes)
        locks = await self.events.find_events_for_user(
            organization_id, user_id, [SecurityEventType.LOGIN_LOCKED], since=since
        )
        for event in locks:
            recorded_until = event.metadata.get("locked_until")
            if recorded_until and ensure_utc(datetime.fromisoformat(recorded_until)) == state.locked_until:
                return True
        return False

    async def _lock(
        self,
        organization_id: UUID,
        user_id: UUID,
        settings: SecuritySettings,
        state: LockState,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginFailureOutcome:
        now = self._clock()
        projected_until = state.locked_until or now + timedelta(minutes=settings.lockout_duration_minutes)
        await self.events.create_security_event(
            SecurityEventCreate(
                organization_id=organization_id,
                event_type=SecurityEventType.LOGIN_LOCKED,
                severity=Severity.HIGH,
                user_id=user_id,
                target_user_id=user_id,
                description=f"Account locked after {state.failed_attempts} failed login attempts",
                metadata={
                    "failed_attempts": state.failed_attempts,
                    "max_attempts": settings.max_login_attempts,
                    "lockout_duration_minutes": settings.lockout_duration_minutes,
                    "locked_until": projected_until.isoformat(),
                },
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
        )
        state = await self.get_lock_state(organization_id, user_id, settings)
        logger.warning("Account locked org=%s user=%s until=%s", organization_id, user_id, state.locked_until)

        alert = await self.raise_alert(
            SecurityAlertCreate(
                organization_id=organization_id,
                alert_type=AlertType.MULTIPLE_FAILED_LOGINS,
                severity=Severity.HIGH,
                title="Multiple failed login attempts",
                description=(
                    f"Account locked after {state.failed_attempts} failed login attempts"
                    + (f" from {ip_address}" if ip_address else "")
                ),
                target_user_id=user_id,
                metadata={
                    "failed_attempts": state.failed_attempts,
                    "ip_address": ip_address,
                    "locked_until": state.locked_until.isoformat() if state.locked_until else None,
                },
            ),
            best_effort=True,
        )
        effects = await self.admin_notifications(
            organization_id,
            settings,
            title="Account locked",
            message=f"A user account was locked after {state.failed_attempts} failed login attempts.",
            priority="high",
            metadata={"user_id": str(user_id), "alert_id": str(alert.id) if alert else None},
        )
        return LoginFailureOutcome(lock_state=state, newly_locked=True, alert=alert, effects=effects)

    async def record_successful_login(
        self,
        organization_id: UUID,
        user_id: UUID,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        return await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.LOGIN_SUCCESS,
            severity=Severity.LOW,
            description="User logged in",
            success=True,
            user_id=user_id,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def unlock_account(
        self,
        organization_id: UUID,
        user_id: UUID,
        actor_id: UUID,
        reason: Optional[str] = None,
        alert_id: Optional[UUID] = None,
    ) -> LockState:
        """Manual reset: failures before this point no longer count."""
        metadata: Dict[str, Any] = {"action": ACCOUNT_UNLOCKED_ACTION}
        if reason:
            metadata["reason"] = reason
        if alert_id:
            metadata["alert_id"] = str(alert_id)
        await self.events.create_security_event(
            SecurityEventCreate(
                organization_id=organization_id,
                event_type=SecurityEventType.USER_ACTIVATED,
                severity=Severity.MEDIUM,
                user_id=actor_id,
                target_user_id=user_id,
                description="Account unlocked" + (f": {reason}" if reason else ""),
                metadata=metadata,
                success=True,
            )
        )
        logger.info("Account unlocked org=%s user=%s by=%s", organization_id, user_id, actor_id)
        return await self.get_lock_state(organization_id, user_id)

    # ---------- queries ----------

    async def find_failed_logins_by_user(
        self, organization_id: UUID, user_id: UUID, hours: int = 24
    ) -> List[SecurityEvent]:
        return await self.events.find_events_for_user(
            organization_id, user_id, [SecurityEventType.LOGIN_FAILED], since=self._clock() - timedelta(hours=hours)
        )

    async def find_suspicious_activity(self, organization_id: UUID, hours: int = 24) -> List[SecurityEvent]:
        return await self.events.find_recent_events(
            organization_id, [SecurityEventType.SUSPICIOUS_ACTIVITY], since=self._clock() - timedelta(hours=hours)
        )

    # ---------- IP lists ----------

    async def is_ip_blocked(self, organization_id: UUID, ip_address: str) -> bool:
        return await self.policies.is_ip_blocked(organization_id, ip_address)

    async def block_ip(
        self, organization_id: UUID, ip_address: str, reason: str, actor_id: Optional[UUID] = None
    ) -> None:
        """Add an address or network to the blocklist. Blocking an already blocked entry only records the event."""
        try:
            await self.policies.add_ip_entry(organization_id, ip_address, IPListType.BLOCK, reason, created_by=actor_id)
        except ConflictError:
            logger.info("IP %s already blocked for org=%s", ip_address, organization_id)
        await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity=Severity.MEDIUM,
            description=f"IP address {ip_address} was blocked. Reason: {reason}",
            success=True,
            user_id=actor_id,
            metadata={"ip_address": ip_address, "reason": reason, "action": "ip_blocked"},
            ip_address=ip_address,
        )

    async def unblock_ip(self, organization_id: UUID, ip_address: str, actor_id: Optional[UUID] = None) -> None:
        try:
            await self.policies.remove_ip_entry(organization_id, ip_address, IPListType.BLOCK)
        except NotFoundError:
            logger.info("IP %s was not blocked for org=%s", ip_address, organization_id)
            return
        await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.SECURITY_SETTINGS_CHANGED,
            severity=Severity.LOW,
            description=f"IP address {ip_address} was unblocked",
            success=True,
            user_id=actor_id,
            metadata={"ip_address": ip_address, "action": "ip_unblocked"},
            ip_address=ip_address,
        )

    # ---------- alerts ----------

    async def raise_alert(self, data: SecurityAlertCreate, best_effort: bool = False) -> Optional[SecurityAlert]:
        try:
            return await self.alerts.create_alert(data)
        except TrustCoreError:
            if not best_effort:
                raise
            logger.exception("Failed to raise %s alert for org=%s", data.alert_type.value, data.organization_id)
            return None

    async def list_unresolved_alerts(self, organization_id: UUID, limit: int = 50) -> List[SecurityAlert]:
        return await self.alerts.list_unresolved_alerts(organization_id, limit=limit)

    async def resolve_alert(
        self, alert_id: UUID, resolved_by: UUID, resolution_notes: Optional[str] = None
    ) -> SecurityAlert:
        """Resolve an alert. Resolving a failed-logins alert also unlocks its target user."""
        alert = await self.alerts.resolve_alert(alert_id, resolved_by, resolution_notes)
        if alert.alert_type == AlertType.MULTIPLE_FAILED_LOGINS and alert.target_user_id is not None:
            await self.unlock_account(
                alert.organization_id,
                alert.target_user_id,
                actor_id=resolved_by,
                reason="Security alert resolved",
                alert_id=alert.id,
            )
        return alert

    # ---------- helpers ----------

    async def admin_notifications(
        self,
        organization_id: UUID,
        settings: SecuritySettings,
        title: str,
        message: str,
        priority: str = "normal",
        metadata: Optional[Dict[str, Any]] = None,
        exclude: Optional[UUID] = None,
    ) -> List[NotificationEffect]:
        if not settings.security_notifications:
            return []
        try:
            admins = await self.users.list_admins(organization_id)
        except TrustCoreError:
            logger.exception("Could not list admins to notify for org=%s", organization_id)
            return []
        return [
            NotificationEffect(
                organization_id=organization_id,
                recipient_id=admin.id,
                title=title,
                message=message,
                priority=priority,
                metadata=metadata or {},
            )
            for admin in admins
            if admin.id != exclude
        ]
