"""
Capacity ledger: per-service daily slot counters and per-date slot occupancy.

The counters are the one place where correctness depends on mutual
exclusion. Every read-modify-write of a service row happens under that
service's lock, so N concurrent reservations against K remaining slots
yield exactly K successes.

Usage:
    ledger = CapacityLedger(services_repo, appointments_repo)
    ledger.register_service("oil-change", "Oil Change", "Maintenance", 8)
    if ledger.reserve("oil-change") is ReserveOutcome.RESERVED:
        ...
"""

import threading
from contextlib import ExitStack, contextmanager
from datetime import date
from enum import Enum
from typing import Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from asms.config import BookingConfig, CapacityConfig
from asms.errors import ConflictError, ValidationError
from asms.logging_context import get_request_logger
from asms.schemas.appointment_schema import Appointment, AppointmentStatus
from asms.schemas.service_schema import ServiceCapacity
from asms.storage.memory import InMemoryRepository
from asms.utils import utcnow

logger = get_request_logger(__name__)


class ReserveOutcome(str, Enum):
    """Result of a reservation attempt. Exhaustion is an outcome, not an error."""

    RESERVED = "reserved"
    EXHAUSTED = "exhausted"
    INACTIVE = "inactive"

    def as_conflict(self, service_id: str) -> ConflictError:
        if self is ReserveOutcome.INACTIVE:
            return ConflictError(
                f"Service {service_id} is not currently accepting bookings",
                ConflictError.SERVICE_INACTIVE,
            )
        return ConflictError(
            f"Service {service_id} has no capacity left today",
            ConflictError.CAPACITY_EXHAUSTED,
        )


def _build_service(data: dict) -> ServiceCapacity:
    try:
        return ServiceCapacity.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "Service") from None


class CapacityLedger:
    """Gates bookings against per-service daily capacity."""

    def __init__(
        self,
        services: InMemoryRepository[ServiceCapacity],
        appointments: InMemoryRepository[Appointment],
        capacity_config: Optional[CapacityConfig] = None,
        booking_config: Optional[BookingConfig] = None,
        time_slots: tuple[str, ...] = (),
    ) -> None:
        self._services = services
        self._appointments = appointments
        self._capacity_config = capacity_config or CapacityConfig()
        self._booking_config = booking_config or BookingConfig()
        self.time_slots = tuple(time_slots)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, service_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(service_id, threading.RLock())

    @contextmanager
    def exclusive(self, *service_ids: str) -> Iterator[None]:
        """Hold the locks of several services at once, acquired in sorted order."""
        with ExitStack() as stack:
            for service_id in sorted(set(service_ids)):
                stack.enter_context(self._lock_for(service_id))
            yield

    # --- Catalog administration ---

    def register_service(
        self,
        service_id: str,
        name: str,
        category: str,
        max_daily_slots: Optional[int] = None,
        description: str = "",
    ) -> ServiceCapacity:
        """Add a service with a full day of capacity.

        Raises:
            ValidationError: If ``max_daily_slots`` is below 1.
        """
        slots = max_daily_slots
        if slots is None:
            slots = self._capacity_config.default_max_daily_slots
        service = self._services.add(_build_service({
            "id": service_id,
            "name": name,
            "category": category,
            "description": description,
            "max_daily_slots": slots,
            "available_slots": max(slots, 0),
        }))
        logger.info("Service registered: %s (%d slots/day)", service_id, slots)
        return service

    def update_service(
        self,
        service_id: str,
        *,
        name: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        max_daily_slots: Optional[int] = None,
    ) -> ServiceCapacity:
        """Edit catalog details and daily capacity of an existing service.

        Slots already used today stay used: remaining capacity becomes the
        new maximum minus today's usage, floored at zero. A service that hits
        zero this way is auto-deactivated; an auto-deactivated one that gains
        room is re-enabled.

        Raises:
            NotFoundError: If the service does not exist.
            ValidationError: If ``max_daily_slots`` is below 1.
        """
        with self.exclusive(service_id):
            service = self._services.get(service_id)
            changes = {
                key: value
                for key, value in (
                    ("name", name), ("category", category), ("description", description)
                )
                if value is not None
            }
            if max_daily_slots is not None:
                used = service.max_daily_slots - service.available_slots
                remaining = max(max_daily_slots - used, 0)
                changes["max_daily_slots"] = max_daily_slots
                changes["available_slots"] = remaining
                if remaining == 0 and service.is_active:
                    changes["is_active"] = False
                    changes["auto_deactivated"] = True
                elif remaining > 0 and service.auto_deactivated:
                    changes["is_active"] = True
                    changes["auto_deactivated"] = False
            updated = _build_service({**service.model_dump(), **changes, "updated_at": utcnow()})
            saved = self._services.save(updated)
        logger.info(
            "Service updated: %s (%d/%d left)",
            service_id, saved.available_slots, saved.max_daily_slots,
        )
        return saved

    def get_service(self, service_id: str) -> ServiceCapacity:
        return self._services.get(service_id)

    def list_services(self, active_only: bool = False) -> list[ServiceCapacity]:
        services = self._services.list(lambda s: s.is_active or not active_only)
        return sorted(services, key=lambda s: s.id)

    def can_reserve(self, service_id: str) -> bool:
        """True if a reservation attempted now would succeed."""
        service = self._services.get(service_id)
        return service.is_active and service.available_slots > 0

    def activate(self, service_id: str) -> ServiceCapacity:
        """Manually re-enable a service and refill its daily capacity."""
        with self.exclusive(service_id):
            service = self._services.get(service_id)
            service.is_active = True
            service.auto_deactivated = False
            service.available_slots = service.max_daily_slots
            service.updated_at = utcnow()
            saved = self._services.save(service)
        logger.info("Service activated: %s", service_id)
        return saved

    def deactivate(self, service_id: str) -> ServiceCapacity:
        """Manually disable a service. The daily sweep leaves it disabled."""
        with self.exclusive(service_id):
            service = self._services.get(service_id)
            service.is_active = False
            service.auto_deactivated = False
            service.updated_at = utcnow()
            saved = self._services.save(service)
        logger.info("Service deactivated: %s", service_id)
        return saved

    # --- Slot occupancy ---

    def _occupying_statuses_excluded(self) -> frozenset[AppointmentStatus]:
        excluded = {AppointmentStatus.CANCELLED}
        if self._booking_config.exclude_completed_from_booked_slots:
            excluded.add(AppointmentStatus.COMPLETED)
        return frozenset(excluded)

    def booked_slots(self, day: date, exclude_appointment_id: Optional[int] = None) -> set[str]:
        """Slot labels already taken on ``day``."""
        excluded = self._occupying_statuses_excluded()
        return {
            a.time_slot
            for a in self._appointments.list(
                lambda a: a.appointment_date == day
                and a.status not in excluded
                and a.id != exclude_appointment_id
            )
        }

    def available_slots(self, day: date) -> list[str]:
        """Configured slot labels still free on ``day``, in configured order."""
        booked = self.booked_slots(day)
        return [label for label in self.time_slots if label not in booked]

    # --- Counters ---

    def _take(self, service: ServiceCapacity) -> ReserveOutcome:
        if service.available_slots <= 0:
            return ReserveOutcome.EXHAUSTED
        if not service.is_active:
            return ReserveOutcome.INACTIVE
        service.available_slots -= 1
        if service.available_slots == 0:
            service.is_active = False
            service.auto_deactivated = True
        service.updated_at = utcnow()
        return ReserveOutcome.RESERVED

    def _give_back(self, service: ServiceCapacity) -> None:
        service.available_slots = min(service.available_slots + 1, service.max_daily_slots)
        if not service.is_active and service.auto_deactivated and service.available_slots > 0:
            service.is_active = True
            service.auto_deactivated = False
        service.updated_at = utcnow()

    def reserve(self, service_id: str) -> ReserveOutcome:
        """Take one unit of today's capacity for ``service_id``.

        Raises:
            NotFoundError: If the service does not exist.
        """
        with self.exclusive(service_id):
            service = self._services.get(service_id)
            outcome = self._take(service)
            if outcome is ReserveOutcome.RESERVED:
                self._services.save(service)
        if outcome is ReserveOutcome.RESERVED:
            logger.info(
                "Reserved %s (%d/%d left)",
                service_id, service.available_slots, service.max_daily_slots,
            )
            if not service.is_active:
                logger.info("Service %s exhausted for today; auto-deactivated", service_id)
        else:
            logger.info("Reservation refused for %s: %s", service_id, outcome.value)
        return outcome

    def release(self, service_id: str) -> ServiceCapacity:
        """Return one unit of capacity, never exceeding max_daily_slots."""
        with self.exclusive(service_id):
            service = self._services.get(service_id)
            self._give_back(service)
            saved = self._services.save(service)
        logger.info(
            "Released %s (%d/%d left)",
            service_id, saved.available_slots, saved.max_daily_slots,
        )
        return saved

    def transfer(self, old_service_id: str, new_service_id: str) -> ReserveOutcome:
        """Move one reservation between services as a single step.

        The new service is checked and charged first; the old one is only
        credited once that succeeded, so a refused transfer changes nothing.
        """
        if old_service_id == new_service_id:
            self._services.get(new_service_id)
            return ReserveOutcome.RESERVED
        with self.exclusive(old_service_id, new_service_id):
            old = self._services.get(old_service_id)
            new = self._services.get(new_service_id)
            outcome = self._take(new)
            if outcome is ReserveOutcome.RESERVED:
                self._give_back(old)
                self._services.save(new)
                self._services.save(old)
        logger.info(
            "Capacity transfer %s -> %s: %s", old_service_id, new_service_id, outcome.value
        )
        return outcome

    def reset_all(self) -> int:
        """Refill every service to max_daily_slots.

        Each service is reset under its own lock rather than in one global
        transaction, so in-flight reservations on other services proceed.

        Returns:
            Number of services reset.
        """
        reactivate_manual = self._capacity_config.reactivate_manual_on_reset
        count = 0
        for service_id in self._services.ids():
            with self.exclusive(service_id):
                service = self._services.find(service_id)
                if service is None:
                    continue
                service.available_slots = service.max_daily_slots
                if not service.is_active and (service.auto_deactivated or reactivate_manual):
                    service.is_active = True
                    service.auto_deactivated = False
                service.updated_at = utcnow()
                self._services.save(service)
                count += 1
        logger.info("Daily capacity reset applied to %d services", count)
        return count
