"""Login flow: IP check, lockout, credential verification and maintenance mode."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from trustcore.errors import (
    AccountLockedError,
    ApplicationError,
    InvalidCredentialsError,
    IPBlockedError,
    MaintenanceModeError,
    TrustCoreError,
)
from trustcore.ports import NotificationSink, UserDirectory
from trustcore.schemas.directory import UserRecord
from trustcore.schemas.security import SecurityEventType, Severity
from trustcore.services.lockout_service import LockoutService
from trustcore.services.notifications import run_effects
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.stores.security_policy_store import SecurityPolicyStore
from trustcore.utils.security import verify_password
from trustcore.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAINTENANCE_MESSAGE = "The system is under maintenance. Please try again later."


class LoginResult(BaseModel):
    user: UserRecord
    password_expired: bool = False
    two_factor_required: bool = False


class LoginService:
    """
    Authenticates a user of an organization.

    Unknown emails and wrong passwords fail identically with
    ``InvalidCredentialsError``; a locked account is rejected before the
    password is looked at, so correct credentials do not bypass a lock.
    Admin notifications produced by a lock are delivered best-effort through
    ``notifier`` once the failure is recorded.
    """

    def __init__(
        self,
        users: UserDirectory,
        policies: SecurityPolicyStore,
        lockout: LockoutService,
        events: SecurityEventLog,
        notifier: Optional[NotificationSink] = None,
        clock: Clock = utc_now,
    ):
        self.users = users
        self.policies = policies
        self.lockout = lockout
        self.events = events
        self.notifier = notifier
        self._clock = clock

    async def login(
        self,
        organization_id: UUID,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if ip_address and await self.policies.is_ip_blocked(organization_id, ip_address):
            await self._unauthorized(organization_id, None, "ip_blocked", email, ip_address, user_agent)
            raise IPBlockedError(ip_address)

        user = await self.users.find_by_email(organization_id, email)
        if user is None:
            await self.events.record_event(
                organization_id=organization_id,
                event_type=SecurityEventType.LOGIN_FAILED,
                severity=Severity.LOW,
                description="Failed login attempt for unknown email",
                success=False,
                metadata={"email": email, "reason": "unknown_email"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError()

        settings = await self.policies.get_or_create_security_settings(organization_id)
        state = await self.lockout.get_lock_state(organization_id, user.id, settings)
        if state.locked:
            await self._unauthorized(organization_id, user.id, "account_locked", email, ip_address, user_agent)
            raise AccountLockedError(state.locked_until)

        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            outcome = await self.lockout.record_failed_login(
                organization_id,
                user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"email": email, "reason": "invalid_password"},
            )
            if not outcome.recorded:
                # locked by a concurrent attempt after our lock check
                await self._unauthorized(organization_id, user.id, "account_locked", email, ip_address, user_agent)
                raise AccountLockedError(outcome.lock_state.locked_until)
            if self.notifier is not None and outcome.effects:
                await run_effects(self.notifier, outcome.effects)
            raise InvalidCredentialsError()

        if not user.is_active:
            await self._unauthorized(organization_id, user.id, "account_inactive", email, ip_address, user_agent)
            raise ApplicationError("Account is deactivated")

        if settings.maintenance_mode and not user.is_admin:
            await self._unauthorized(organization_id, user.id, "maintenance_mode", email, ip_address, user_agent)
            raise MaintenanceModeError(settings.maintenance_message or DEFAULT_MAINTENANCE_MESSAGE)

        await self.lockout.record_successful_login(
            organization_id, user.id, ip_address=ip_address, user_agent=user_agent, metadata={"email": email}
        )
        logged_in_at = self._clock()
        try:
            await self.users.update_last_login(user.id, logged_in_at)
        except TrustCoreError:
            logger.exception("Failed updating last login for user=%s", user.id)

        password_expired = await self.policies.is_password_expired(
            organization_id, user.password_changed_at or user.created_at
        )
        return LoginResult(
            user=user.model_copy(update={"last_login_at": logged_in_at}),
            password_expired=password_expired,
            two_factor_required=settings.two_factor_required,
        )

    async def _unauthorized(
        self,
        organization_id: UUID,
        user_id: Optional[UUID],
        reason: str,
        email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
            severity=Severity.HIGH if reason == "ip_blocked" else Severity.MEDIUM,
            description=f"Login rejected: {reason.replace('_', ' ')}",
            success=False,
            user_id=user_id,
            metadata={"reason": reason, "email": email},
            ip_address=ip_address,
            user_agent=user_agent,
        )
