"""Error taxonomy for the trust core.

Stores raise ``RepositoryError`` (wrapping the driver error as ``cause``),
services raise the business errors below. The permission check is the one
operation that never raises: see ``PermissionDecision``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional


class TrustCoreError(Exception):
    """Base exception for trust core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        self.message = message
        self.details = details or {}
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class ValidationError(TrustCoreError):
    """Malformed input at a boundary. Never silently coerced."""


class RepositoryError(TrustCoreError):
    """Storage or infrastructure failure, including timeouts and invalid stored records."""


class ApplicationError(TrustCoreError):
    """Business rule violation."""


class NotFoundError(TrustCoreError):
    """Referenced entity does not exist."""


class ConflictError(TrustCoreError):
    """Duplicate edge, reused password or an already terminal state."""


class PermissionDeniedError(ApplicationError):
    """The principal lacks the permission required for an action."""

    def __init__(self, user_id: Any, resource: str, action: str):
        super().__init__(
            f"User does not have permission to {action} {resource}",
            details={"user_id": str(user_id), "resource": resource, "action": action},
        )


class PasswordPolicyError(ApplicationError):
    """Password rejected by the organization's policy. Carries every violation."""

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("Password does not meet the security policy", details={"violations": self.violations})


class InvalidCredentialsError(ApplicationError):
    """Generic authentication failure. Never reveals which credential was wrong."""

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class AccountLockedError(ApplicationError):
    def __init__(self, locked_until: Optional[datetime]):
        self.locked_until = locked_until
        super().__init__(
            "Account is locked due to too many failed login attempts",
            details={"locked_until": locked_until.isoformat() if locked_until else None},
        )


class IPBlockedError(ApplicationError):
    def __init__(self, ip_address: str):
        super().__init__("Access from this IP address is blocked", details={"ip_address": ip_address})


class MaintenanceModeError(ApplicationError):
    pass
