"""Catalog services and their live daily capacity state."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from asms.utils import utcnow


class ServiceCapacity(BaseModel):
    """Per-service capacity counter.

    ``auto_deactivated`` marks a service the ledger switched off because it
    ran out of slots, as opposed to one an admin switched off by hand.
    """

    id: str
    name: str
    category: str
    description: str = ""
    max_daily_slots: int = Field(ge=1)
    available_slots: int = Field(ge=0)
    is_active: bool = True
    auto_deactivated: bool = False
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ServiceCapacity":
        if self.available_slots > self.max_daily_slots:
            raise ValueError("available_slots cannot exceed max_daily_slots")
        return self
