"""Inbox notifications and the payload pushed over live channels."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from asms.utils import utcnow


class NotificationType(str, Enum):
    """Closed set of event kinds a notification can describe."""

    APPOINTMENT_CREATED = "APPOINTMENT_CREATED"
    APPOINTMENT_CONFIRMED = "APPOINTMENT_CONFIRMED"
    APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"
    APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"
    EMPLOYEE_ASSIGNED = "EMPLOYEE_ASSIGNED"
    STATUS_CHANGED_IN_SERVICE = "STATUS_CHANGED_IN_SERVICE"
    STATUS_CHANGED_READY = "STATUS_CHANGED_READY"
    STATUS_CHANGED_COMPLETED = "STATUS_CHANGED_COMPLETED"
    CHANGE_REQUEST_SUBMITTED = "CHANGE_REQUEST_SUBMITTED"
    CHANGE_REQUEST_APPROVED = "CHANGE_REQUEST_APPROVED"
    CHANGE_REQUEST_REJECTED = "CHANGE_REQUEST_REJECTED"
    GENERAL = "GENERAL"


class Notification(BaseModel):
    """One unit of delivered information to one recipient."""

    id: Optional[int] = None
    recipient_id: int
    appointment_id: Optional[int] = None
    title: str
    message: str
    type: NotificationType
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None


class PushMessage(BaseModel):
    """Payload published on a user or admin-broadcast channel."""

    notification_id: Optional[int] = None
    recipient_id: Optional[int] = None
    appointment_id: Optional[int] = None
    title: str
    message: str
    type: NotificationType
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_notification(cls, notification: Notification) -> "PushMessage":
        return cls(
            notification_id=notification.id,
            recipient_id=notification.recipient_id,
            appointment_id=notification.appointment_id,
            title=notification.title,
            message=notification.message,
            type=notification.type,
            timestamp=notification.created_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
