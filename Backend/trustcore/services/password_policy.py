"""Password policy evaluation and password history."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import List
from uuid import UUID

from trustcore.schemas.security import PasswordPolicyResult, SecuritySettings
from trustcore.stores.password_history_store import PasswordHistoryStore
from trustcore.stores.security_policy_store import SecurityPolicyStore
from trustcore.utils.security import verify_password

logger = logging.getLogger(__name__)

SPECIAL_CHARS_RE = re.compile(r'[!@#$%^&*(),.?":{}|<>]')


def evaluate_password_policy(settings: SecuritySettings, password: str) -> List[str]:
    """Every rule is evaluated independently; all violations are returned."""
    violations: List[str] = []
    if len(password) < settings.password_min_length:
        violations.append(f"Password must be at least {settings.password_min_length} characters long")
    if settings.password_require_uppercase and not re.search(r"[A-Z]", password):
        violations.append("Password must contain at least one uppercase letter")
    if settings.password_require_lowercase and not re.search(r"[a-z]", password):
        violations.append("Password must contain at least one lowercase letter")
    if settings.password_require_numbers and not re.search(r"[0-9]", password):
        violations.append("Password must contain at least one number")
    if settings.password_require_special_chars and not SPECIAL_CHARS_RE.search(password):
        violations.append("Password must contain at least one special character")
    return violations


class PasswordPolicyService:
    def __init__(self, policies: SecurityPolicyStore, history: PasswordHistoryStore):
        self.policies = policies
        self.history = history

    async def validate_password_policy(self, organization_id: UUID, password: str) -> PasswordPolicyResult:
        settings = await self.policies.get_or_create_security_settings(organization_id)
        violations = evaluate_password_policy(settings, password)
        return PasswordPolicyResult(is_valid=not violations, violations=violations)

    async def check_password_history(self, organization_id: UUID, user_id: UUID, password: str) -> bool:
        """True when ``password`` matches one of the last ``password_history_count`` passwords."""
        settings = await self.policies.get_or_create_security_settings(organization_id)
        if settings.password_history_count == 0:
            return False
        hashes = await self.history.recent_hashes(user_id, settings.password_history_count)
        for hashed in hashes:
            # hashes are salted, each one has to be verified
            if await asyncio.to_thread(verify_password, password, hashed):
                return True
        return False

    async def save_password_history(self, organization_id: UUID, user_id: UUID, password_hash: str) -> None:
        settings = await self.policies.get_or_create_security_settings(organization_id)
        if settings.password_history_count == 0:
            return
        await self.history.append(user_id, password_hash, keep=settings.password_history_count)
