"""Customer change requests against booked appointments."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from asms.utils import utcnow


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ChangeRequest(BaseModel):
    """A customer's ask to alter reason/date/time of an existing appointment."""

    id: Optional[int] = None
    appointment_id: int
    customer_id: int
    reason: str
    status: RequestStatus = RequestStatus.PENDING
    admin_response: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
