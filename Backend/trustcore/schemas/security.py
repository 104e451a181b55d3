"""
Pydantic schemas for security settings, events, alerts and statistics.

Every row read from storage is validated through one of these read schemas;
numeric ranges are enforced on read as well as on write, so a corrupted row
surfaces as a repository error instead of reaching the lockout logic.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from trustcore.schemas.common import Pagination
from trustcore.utils.security import is_valid_domain, normalize_ip_entry
from trustcore.utils.time import ensure_utc


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED = "login_locked"
    PASSWORD_CHANGED = "password_changed"
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"
    USER_SUSPENDED = "user_suspended"
    USER_ACTIVATED = "user_activated"
    PERMISSION_CHANGED = "permission_changed"
    SECURITY_SETTINGS_CHANGED = "security_settings_changed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_EXPORT = "data_export"
    DATA_IMPORT = "data_import"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"
    SUSPICIOUS_LOGIN_LOCATION = "suspicious_login_location"
    PASSWORD_BREACH_ATTEMPT = "password_breach_attempt"
    UNUSUAL_ACTIVITY_PATTERN = "unusual_activity_pattern"
    PRIVILEGED_ACTION = "privileged_action"
    DATA_ACCESS_ANOMALY = "data_access_anomaly"
    SECURITY_SETTINGS_CHANGED = "security_settings_changed"


class IPListType(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


# Metadata keys accepted per event type. Anything else is rejected at write time.
COMMON_METADATA_KEYS: FrozenSet[str] = frozenset({"request_id", "source"})

EVENT_METADATA_KEYS: Dict[SecurityEventType, FrozenSet[str]] = {
    SecurityEventType.LOGIN_SUCCESS: frozenset({"email", "method"}),
    SecurityEventType.LOGIN_FAILED: frozenset({"email", "reason", "attempt", "max_attempts"}),
    SecurityEventType.LOGIN_LOCKED: frozenset(
        {"failed_attempts", "max_attempts", "lockout_duration_minutes", "locked_until"}
    ),
    SecurityEventType.PASSWORD_CHANGED: frozenset({"method", "reason"}),
    SecurityEventType.USER_CREATED: frozenset({"email", "role"}),
    SecurityEventType.USER_DELETED: frozenset({"email", "reason"}),
    SecurityEventType.USER_SUSPENDED: frozenset({"reason"}),
    SecurityEventType.USER_ACTIVATED: frozenset({"action", "reason", "alert_id"}),
    SecurityEventType.PERMISSION_CHANGED: frozenset(
        {"action", "role_id", "permission_id", "role_ids", "permission_ids", "added", "removed"}
    ),
    SecurityEventType.SECURITY_SETTINGS_CHANGED: frozenset(
        {"action", "changed_fields", "previous_settings", "new_settings", "ip_address", "list_type", "reason"}
    ),
    SecurityEventType.SUSPICIOUS_ACTIVITY: frozenset({"action", "ip_address", "reason", "list_type", "details"}),
    SecurityEventType.DATA_EXPORT: frozenset({"entity_type", "record_count", "format"}),
    SecurityEventType.DATA_IMPORT: frozenset({"entity_type", "record_count", "format"}),
    SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT: frozenset(
        {"reason", "email", "resource", "action", "resource_owner_id", "path", "method"}
    ),
}

# Reset marker written when a lock is cleared by an administrator.
ACCOUNT_UNLOCKED_ACTION = "account_unlocked"

MIN_RETENTION_DAYS = 30

# settings where an explicit null is meaningful (it disables the feature)
_NULLABLE_UPDATE_FIELDS = frozenset({"password_expiration_days", "login_attempt_window_minutes", "maintenance_message"})


def _normalize_domains(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    out: List[str] = []
    invalid: List[str] = []
    for raw in values:
        domain = raw.strip().lower()
        if not is_valid_domain(domain):
            invalid.append(raw)
        elif domain not in out:
            out.append(domain)
    if invalid:
        raise ValueError(f"Invalid email domain(s): {', '.join(invalid)}")
    return out


def _normalize_ips(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    out: List[str] = []
    invalid: List[str] = []
    for raw in values:
        try:
            entry = normalize_ip_entry(raw)
        except ValueError:
            invalid.append(raw)
            continue
        if entry not in out:
            out.append(entry)
    if invalid:
        raise ValueError(f"Invalid IP address(es): {', '.join(invalid)}")
    return out


# -------------------------
# Security settings
# -------------------------

class SecuritySettings(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    password_min_length: int = Field(..., ge=4, le=128)
    password_require_uppercase: bool
    password_require_lowercase: bool
    password_require_numbers: bool
    password_require_special_chars: bool
    password_expiration_days: Optional[int] = Field(None, ge=1, le=365)
    password_history_count: int = Field(..., ge=0, le=24)
    max_login_attempts: int = Field(..., ge=3, le=20)
    lockout_duration_minutes: int = Field(..., ge=5, le=1440)
    login_attempt_window_minutes: Optional[int] = Field(None, ge=1, le=1440)
    session_timeout_minutes: int = Field(..., ge=15, le=1440)
    two_factor_required: bool
    allowed_email_domains: List[str] = Field(default_factory=list)
    blocked_email_domains: List[str] = Field(default_factory=list)
    ip_allowlist: List[str] = Field(default_factory=list)
    ip_blocklist: List[str] = Field(default_factory=list)
    data_retention_days: int = Field(..., ge=MIN_RETENTION_DAYS, le=2555)
    audit_log_enabled: bool
    encryption_at_rest: bool
    security_notifications: bool
    maintenance_mode: bool
    maintenance_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def attempt_window_minutes(self) -> int:
        return self.login_attempt_window_minutes or self.lockout_duration_minutes

    @property
    def shares_lockout_window(self) -> bool:
        return self.login_attempt_window_minutes is None


class SecuritySettingsUpdate(BaseModel):
    """Partial update. Only fields explicitly provided are applied."""

    model_config = ConfigDict(extra="forbid")

    password_min_length: Optional[int] = Field(None, ge=4, le=128)
    password_require_uppercase: Optional[bool] = None
    password_require_lowercase: Optional[bool] = None
    password_require_numbers: Optional[bool] = None
    password_require_special_chars: Optional[bool] = None
    password_expiration_days: Optional[int] = Field(None, ge=1, le=365)
    password_history_count: Optional[int] = Field(None, ge=0, le=24)
    max_login_attempts: Optional[int] = Field(None, ge=3, le=20)
    lockout_duration_minutes: Optional[int] = Field(None, ge=5, le=1440)
    login_attempt_window_minutes: Optional[int] = Field(None, ge=1, le=1440)
    session_timeout_minutes: Optional[int] = Field(None, ge=15, le=1440)
    two_factor_required: Optional[bool] = None
    allowed_email_domains: Optional[List[str]] = None
    blocked_email_domains: Optional[List[str]] = None
    ip_allowlist: Optional[List[str]] = None
    ip_blocklist: Optional[List[str]] = None
    data_retention_days: Optional[int] = Field(None, ge=MIN_RETENTION_DAYS, le=2555)
    audit_log_enabled: Optional[bool] = None
    encryption_at_rest: Optional[bool] = None
    security_notifications: Optional[bool] = None
    maintenance_mode: Optional[bool] = None
    maintenance_message: Optional[str] = Field(None, max_length=1000)

    @field_validator("allowed_email_domains", "blocked_email_domains")
    @classmethod
    def _domains(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_domains(v)

    @field_validator("ip_allowlist", "ip_blocklist")
    @classmethod
    def _ips(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_ips(v)

    @model_validator(mode="after")
    def _reject_null_for_required(self) -> "SecuritySettingsUpdate":
        nulls = [
            name for name in self.model_fields_set
            if getattr(self, name) is None and name not in _NULLABLE_UPDATE_FIELDS
        ]
        if nulls:
            raise ValueError(f"Fields cannot be null: {', '.join(sorted(nulls))}")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# -------------------------
# IP access lists
# -------------------------

class IPAccessEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    ip_address: str
    list_type: IPListType
    reason: str
    created_by: Optional[UUID] = None
    created_at: datetime

    @field_validator("created_at", mode="after")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# -------------------------
# Security events
# -------------------------

class SecurityEventCreate(BaseModel):
    organization_id: UUID
    event_type: SecurityEventType
    severity: Severity
    user_id: Optional[UUID] = None
    target_user_id: Optional[UUID] = None
    description: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = None
    success: bool


class SecurityEvent(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    event_type: SecurityEventType
    severity: Severity
    user_id: Optional[UUID] = None
    target_user_id: Optional[UUID] = None
    description: str
    # ORM attribute is ``details`` (``metadata`` is reserved by SQLAlchemy)
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("details", "metadata"))
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    created_at: datetime

    @field_validator("created_at", mode="after")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


SecurityEventSortField = Literal["event_type", "severity", "user_id", "success", "created_at"]


class SecurityEventQuery(Pagination):
    keyword: Optional[str] = None
    event_type: Optional[SecurityEventType] = None
    severity: Optional[Severity] = None
    user_id: Optional[UUID] = None
    target_user_id: Optional[UUID] = None
    success: Optional[bool] = None
    ip_address: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    sort_by: SecurityEventSortField = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


# -------------------------
# Alerts
# -------------------------

class SecurityAlertCreate(BaseModel):
    organization_id: UUID
    alert_type: AlertType
    severity: Severity
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    user_id: Optional[UUID] = None
    target_user_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SecurityAlert(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    alert_type: AlertType
    severity: Severity
    title: str
    description: str
    user_id: Optional[UUID] = None
    target_user_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("details", "metadata"))
    is_resolved: bool
    resolved_by: Optional[UUID] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("resolved_at", "created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


# -------------------------
# Lockout / password policy
# -------------------------

class LockState(BaseModel):
    locked: bool
    failed_attempts: int = Field(..., ge=0)
    remaining_attempts: int = Field(..., ge=0)
    locked_until: Optional[datetime] = None


class PasswordPolicyResult(BaseModel):
    is_valid: bool
    violations: List[str] = Field(default_factory=list)


# -------------------------
# Statistics
# -------------------------

class DailyTrendEntry(BaseModel):
    date: str
    events: int
    failed_logins: int
    suspicious_activities: int


class TopUserEntry(BaseModel):
    user_id: UUID
    user_name: str
    event_count: int
    last_activity: datetime


class TopIPEntry(BaseModel):
    ip_address: str
    event_count: int
    last_activity: datetime
    is_blocked: bool


class SecurityStats(BaseModel):
    total_events: int
    events_today: int
    events_this_week: int
    events_this_month: int
    failed_logins: int
    successful_logins: int
    locked_accounts: int
    suspicious_activities: int
    critical_events: int
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    events_by_severity: Dict[str, int] = Field(default_factory=dict)
    daily_trend: List[DailyTrendEntry] = Field(default_factory=list)
    top_users: List[TopUserEntry] = Field(default_factory=list)
    top_ips: List[TopIPEntry] = Field(default_factory=list)
