"""Appointment records, booking requests and the status enum."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from asms.errors import ValidationError
from asms.utils import normalize_plate, normalize_slot_label, utcnow


class AppointmentStatus(str, Enum):
    """Closed set of appointment states, serialized by uppercase name."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_SERVICE = "IN_SERVICE"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


EDITABLE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


def parse_status(value: Union[str, AppointmentStatus]) -> AppointmentStatus:
    """Parse an external status value. Unknown values never fall back to a default."""
    if isinstance(value, AppointmentStatus):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"Invalid status type: {type(value).__name__}", ["status"])
    try:
        return AppointmentStatus[value.strip().upper()]
    except KeyError:
        valid = ", ".join(s.value for s in AppointmentStatus)
        raise ValidationError(
            f"Invalid status {value!r}. Valid values: {valid}", ["status"]
        ) from None


class VehicleInfo(BaseModel):
    """Vehicle descriptor captured at booking time."""

    model_config = ConfigDict(str_strip_whitespace=True)

    vehicle_type: str = Field(min_length=1)
    brand: str = Field(min_length=1)
    model: Optional[str] = None
    year: Optional[int] = Field(default=None, ge=1900, le=2100)
    plate: str = Field(min_length=1)
    fuel_type: Optional[str] = None

    @field_validator("plate")
    @classmethod
    def _normalize_plate(cls, value: str) -> str:
        plate = normalize_plate(value)
        if not plate:
            raise ValueError("plate must contain letters or digits")
        return plate

    @property
    def label(self) -> str:
        return " ".join(part for part in (self.brand, self.model) if part)


class BookingRequest(BaseModel):
    """Validated booking request submitted by a customer."""

    model_config = ConfigDict(str_strip_whitespace=True)

    vehicle: VehicleInfo
    service_id: str = Field(min_length=1)
    appointment_date: date
    time_slot: str = Field(min_length=1)
    additional_requirements: Optional[str] = None

    @field_validator("time_slot")
    @classmethod
    def _normalize_slot(cls, value: str) -> str:
        return normalize_slot_label(value)


class AppointmentEdit(BaseModel):
    """New date/slot (and optionally service/notes) applied after an approved change request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    appointment_date: date
    time_slot: str = Field(min_length=1)
    service_id: Optional[str] = None
    additional_requirements: Optional[str] = None

    @field_validator("time_slot")
    @classmethod
    def _normalize_slot(cls, value: str) -> str:
        return normalize_slot_label(value)


class Appointment(BaseModel):
    """One service booking."""

    id: Optional[int] = None
    customer_id: int
    vehicle: VehicleInfo
    service_id: str
    service_category: str = ""
    service_type: str = ""
    additional_requirements: str = ""
    appointment_date: date
    time_slot: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    assigned_employee_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def _parse(model: type[BaseModel], data: Any) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, model.__name__) from None


def parse_booking_request(data: Union[BookingRequest, dict]) -> BookingRequest:
    """Validate raw booking input, raising the core ValidationError on bad data."""
    return _parse(BookingRequest, data)


def parse_appointment_edit(data: Union[AppointmentEdit, dict]) -> AppointmentEdit:
    """Validate raw edit input, raising the core ValidationError on bad data."""
    return _parse(AppointmentEdit, data)
