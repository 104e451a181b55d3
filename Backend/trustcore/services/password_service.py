"""Password change flow."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional
from uuid import UUID

from trustcore.errors import ConflictError, InvalidCredentialsError, PasswordPolicyError
from trustcore.ports import UserDirectory
from trustcore.schemas.directory import UserRecord
from trustcore.schemas.security import SecurityEventType, Severity
from trustcore.services.password_policy import PasswordPolicyService
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.utils.security import hash_password, verify_password
from trustcore.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


class PasswordChangeService:
    def __init__(
        self,
        users: UserDirectory,
        policy: PasswordPolicyService,
        events: SecurityEventLog,
        clock: Clock = utc_now,
    ):
        self.users = users
        self.policy = policy
        self.events = events
        self._clock = clock

    async def change_password(
        self,
        organization_id: UUID,
        user_id: UUID,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserRecord:
        user = await self.users.get_user(user_id)
        if user is None or user.org_id != organization_id:
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(verify_password, current_password, user.password_hash):
            raise InvalidCredentialsError()

        result = await self.policy.validate_password_policy(organization_id, new_password)
        if not result.is_valid:
            raise PasswordPolicyError(result.violations)

        if await self.policy.check_password_history(organization_id, user_id, new_password):
            raise ConflictError("Password was used recently and cannot be reused")

        new_hash = await asyncio.to_thread(hash_password, new_password)
        changed_at = self._clock()
        await self.users.update_password_hash(user_id, new_hash, changed_at)
        await self.policy.save_password_history(organization_id, user_id, new_hash)
        logger.info("Password changed org=%s user=%s", organization_id, user_id)

        await self.events.record_event(
            organization_id=organization_id,
            event_type=SecurityEventType.PASSWORD_CHANGED,
            severity=Severity.LOW,
            description="Password changed",
            success=True,
            user_id=user_id,
            target_user_id=user_id,
            metadata={"method": "self_service"},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user.model_copy(update={"password_hash": new_hash, "password_changed_at": changed_at})
