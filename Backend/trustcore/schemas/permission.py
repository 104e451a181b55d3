"""
Pydantic schemas for RBAC.

Read schemas (``Permission``, ``Role`` ...) validate every record coming out
of storage; Create/Update schemas validate administrative input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trustcore.schemas.common import Pagination
from trustcore.utils.time import ensure_utc


class PermissionScope(str, Enum):
    GLOBAL = "global"
    ORGANIZATION = "organization"
    OWN = "own"


class Resources:
    USERS = "users"
    LEADS = "leads"
    CUSTOMERS = "customers"
    DEALS = "deals"
    ACTIVITIES = "activities"
    REPORTS = "reports"
    DOCUMENTS = "documents"
    NOTIFICATIONS = "notifications"
    SETTINGS = "settings"
    SECURITY_SETTINGS = "security_settings"
    SECURITY_EVENTS = "security_events"


class Actions:
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE = "manage"
    EXPORT = "export"
    IMPORT = "import"


class _TimestampedRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at", "assigned_at", mode="after", check_fields=False)
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


# -------------------------
# Permissions
# -------------------------

class PermissionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    resource: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=100)
    scope: PermissionScope = PermissionScope.OWN
    is_active: bool = True


class PermissionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    resource: Optional[str] = Field(None, min_length=1, max_length=100)
    action: Optional[str] = Field(None, min_length=1, max_length=100)
    scope: Optional[PermissionScope] = None
    is_active: Optional[bool] = None


class Permission(_TimestampedRecord):
    id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    scope: PermissionScope
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PermissionFilter(BaseModel):
    resource: Optional[str] = None
    action: Optional[str] = None
    scope: Optional[PermissionScope] = None
    is_active: Optional[bool] = None
    keyword: Optional[str] = None


class ListPermissionsQuery(Pagination):
    filter: PermissionFilter = Field(default_factory=PermissionFilter)


# -------------------------
# Roles
# -------------------------

class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_system: bool = False
    is_active: bool = True


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None


class Role(_TimestampedRecord):
    id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_system: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class RoleWithPermissions(Role):
    permissions: List[Permission] = Field(default_factory=list)


class RoleFilter(BaseModel):
    is_system: Optional[bool] = None
    is_active: Optional[bool] = None
    keyword: Optional[str] = None


class ListRolesQuery(Pagination):
    filter: RoleFilter = Field(default_factory=RoleFilter)


# -------------------------
# Edges
# -------------------------

class RolePermission(_TimestampedRecord):
    id: UUID
    role_id: UUID
    permission_id: UUID
    created_at: datetime


class UserRoleAssignment(_TimestampedRecord):
    id: UUID
    user_id: UUID
    role_id: UUID
    assigned_by: UUID
    assigned_at: datetime


class UserWithRoles(BaseModel):
    id: UUID
    email: str
    name: str
    roles: List[RoleWithPermissions] = Field(default_factory=list)
    all_permissions: List[Permission] = Field(default_factory=list)
