"""
SQLAlchemy ORM models for the user and organization directories.

These back the SQL adapters of the directory ports. The user ``role`` is the
simple tri-level role used for coarse checks elsewhere in the CRM; it is
unrelated to the RBAC roles in ``trustcore.models.permission``.
"""

import uuid

from sqlalchemy import (Column, String, Boolean, DateTime, Text, Uuid, Enum as SAEnum, func, Index, ForeignKey,
                        UniqueConstraint)

from trustcore.database import Base


UserRoleEnum = SAEnum(
    "admin",
    "manager",
    "user",
    name="user_role",
)


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_organizations_is_active", "is_active"),
    )


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(320), nullable=False, index=True)  # 320 is RFC max
    password_hash = Column(String(255), nullable=False)
    name = Column(String(200), nullable=False)
    role = Column(UserRoleEnum, nullable=False, server_default="user")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    password_changed_at = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_users_org_id_email"),
        Index("ix_users_org_id_role", "org_id", "role"),
    )
