"""
SQLAlchemy ORM models for the security policy and monitoring tables.

- SecuritySettings: one row per organization
- IPAccessEntry: per-organization allow/block list rows with a reason
- SecurityEvent: append-only log (deleted only by retention cleanup)
- SecurityAlert: derived signal with a resolve lifecycle
- PasswordHistory: bounded per-user list of previous password hashes
"""

import uuid

from sqlalchemy import (Column, String, Boolean, DateTime, Integer, Text, ForeignKey, UniqueConstraint, Index, Uuid,
                        Enum as SAEnum, func)

from trustcore.database import Base
from trustcore.models.types import JSONType


SeverityEnum = SAEnum("low", "medium", "high", "critical", name="security_severity")

IPListTypeEnum = SAEnum("allow", "block", name="ip_list_type")


class SecuritySettings(Base):
    __tablename__ = "security_settings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    password_min_length = Column(Integer, nullable=False, default=8)
    password_require_uppercase = Column(Boolean, nullable=False, default=True)
    password_require_lowercase = Column(Boolean, nullable=False, default=True)
    password_require_numbers = Column(Boolean, nullable=False, default=True)
    password_require_special_chars = Column(Boolean, nullable=False, default=False)
    password_expiration_days = Column(Integer, nullable=True)  # null disables expiration
    password_history_count = Column(Integer, nullable=False, default=0)

    max_login_attempts = Column(Integer, nullable=False, default=5)
    lockout_duration_minutes = Column(Integer, nullable=False, default=30)
    login_attempt_window_minutes = Column(Integer, nullable=True)  # null: counted over lockout_duration_minutes
    session_timeout_minutes = Column(Integer, nullable=False, default=24 * 60)
    two_factor_required = Column(Boolean, nullable=False, default=False)

    allowed_email_domains = Column(JSONType, nullable=False, default=list)
    blocked_email_domains = Column(JSONType, nullable=False, default=list)

    data_retention_days = Column(Integer, nullable=False, default=365)
    audit_log_enabled = Column(Boolean, nullable=False, default=True)
    encryption_at_rest = Column(Boolean, nullable=False, default=True)
    security_notifications = Column(Boolean, nullable=False, default=True)
    maintenance_mode = Column(Boolean, nullable=False, default=False)
    maintenance_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_security_settings_organization_id"),
    )


class IPAccessEntry(Base):
    __tablename__ = "ip_access_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String(64), nullable=False)  # address or CIDR network
    list_type = Column(IPListTypeEnum, nullable=False)
    reason = Column(Text, nullable=False)
    created_by = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "ip_address", "list_type", name="uq_ip_access_entries_org_ip_type"),
        Index("ix_ip_access_entries_org_type", "organization_id", "list_type"),
    )


class SecurityEvent(Base):
    __tablename__ = "security_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(SeverityEnum, nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    target_user_id = Column(Uuid(as_uuid=True), nullable=True)
    description = Column(Text, nullable=False)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


Index("ix_security_events_org_user_type_ts", SecurityEvent.organization_id, SecurityEvent.user_id,
      SecurityEvent.event_type, SecurityEvent.created_at)


class SecurityAlert(Base):
    __tablename__ = "security_alerts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    alert_type = Column(String(64), nullable=False, index=True)
    severity = Column(SeverityEnum, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    target_user_id = Column(Uuid(as_uuid=True), nullable=True)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    is_resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_by = Column(Uuid(as_uuid=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class PasswordHistory(Base):
    __tablename__ = "password_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
