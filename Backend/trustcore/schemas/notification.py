from typing import Any, Dict
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationEffect(BaseModel):
    """A notification to send once the primary operation has committed."""

    organization_id: UUID
    recipient_id: UUID
    title: str
    message: str
    category: str = "security"
    priority: str = "normal"
    metadata: Dict[str, Any] = Field(default_factory=dict)
