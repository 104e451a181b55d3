"""
Collaborator interfaces the trust core depends on but does not own.

SQL adapters live in ``trustcore.stores.directory``; notification delivery is
left to the host application (``LoggingNotificationSink`` is a fallback).
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol
from uuid import UUID

from trustcore.schemas.directory import UserRecord
from trustcore.schemas.notification import NotificationEffect


class UserDirectory(Protocol):
    async def get_user(self, user_id: UUID) -> Optional[UserRecord]:
        ...

    async def find_by_email(self, organization_id: UUID, email: str) -> Optional[UserRecord]:
        ...

    async def list_admins(self, organization_id: UUID) -> List[UserRecord]:
        ...

    async def get_user_names(self, user_ids: Iterable[UUID]) -> Dict[UUID, str]:
        ...

    async def update_password_hash(self, user_id: UUID, password_hash: str, changed_at: datetime) -> None:
        ...

    async def update_last_login(self, user_id: UUID, logged_in_at: datetime) -> None:
        ...


class OrganizationDirectory(Protocol):
    async def organization_exists(self, organization_id: UUID) -> bool:
        ...


class NotificationSink(Protocol):
    async def send(self, effect: NotificationEffect) -> None:
        ...
