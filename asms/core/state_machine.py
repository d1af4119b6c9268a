"""
Finite state machine for the appointment lifecycle.

Defines the six appointment states and the only legal edges between them.
Every status write in the system goes through this module: a transition
that is not listed in TRANSITIONS is rejected with InvalidStateError and
the list of states that would have been legal.

    PENDING -> CONFIRMED -> IN_SERVICE -> READY -> COMPLETED
    (every non-terminal state may also move to CANCELLED)

Usage:
    machine = AppointmentStateMachine(appointments, ledger, directory, bus)
    appt = machine.create(booking, customer_id=7)
    machine.approve(appt.id)
    machine.assign_employee(appt.id, employee_id=3)
"""

import threading
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional, Union

from asms.config import BookingConfig, CapacityConfig
from asms.core.capacity import CapacityLedger, ReserveOutcome
from asms.core.events import AppointmentEvent, EventBus, EventKind
from asms.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from asms.logging_context import get_request_logger
from asms.schemas.appointment_schema import (
    EDITABLE_STATUSES,
    Appointment,
    AppointmentEdit,
    AppointmentStatus,
    BookingRequest,
    parse_appointment_edit,
    parse_booking_request,
    parse_status,
)
from asms.schemas.user_schema import Role
from asms.storage.memory import InMemoryRepository
from asms.tools.services import match_service
from asms.tools.users import UserDirectory
from asms.utils import utcnow

logger = get_request_logger(__name__)


@dataclass(frozen=True)
class Transition:
    """A single legal status edge."""
    from_state: AppointmentStatus
    to_state: AppointmentStatus


TRANSITIONS: list[Transition] = [
    Transition(AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED),
    Transition(AppointmentStatus.PENDING, AppointmentStatus.CANCELLED),
    Transition(AppointmentStatus.CONFIRMED, AppointmentStatus.IN_SERVICE),
    Transition(AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED),
    Transition(AppointmentStatus.IN_SERVICE, AppointmentStatus.READY),
    Transition(AppointmentStatus.IN_SERVICE, AppointmentStatus.CANCELLED),
    Transition(AppointmentStatus.READY, AppointmentStatus.COMPLETED),
    Transition(AppointmentStatus.READY, AppointmentStatus.CANCELLED),
]


def valid_targets(status: AppointmentStatus) -> list[AppointmentStatus]:
    """Return every status reachable in one step from ``status``."""
    return [t.to_state for t in TRANSITIONS if t.from_state == status]


def can_transition(from_state: AppointmentStatus, to_state: AppointmentStatus) -> bool:
    return any(t.from_state == from_state and t.to_state == to_state for t in TRANSITIONS)


def is_terminal(status: AppointmentStatus) -> bool:
    """Terminal states have no outgoing edges."""
    return not valid_targets(status)


def _parse_role(value: Union[str, Role]) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role[str(value).strip().upper()]
    except KeyError:
        raise ValidationError(f"Invalid actor role {value!r}", ["actor_role"]) from None


class AppointmentStateMachine:
    """
    Owns appointment records and enforces legal transitions.

    Each write holds the appointment's row lock. Events are published after
    the write is committed and outside every lock, so a slow or failing
    subscriber can neither block other bookings nor undo the change.
    """

    def __init__(
        self,
        appointments: InMemoryRepository[Appointment],
        ledger: CapacityLedger,
        directory: UserDirectory,
        bus: EventBus,
        booking_config: Optional[BookingConfig] = None,
        capacity_config: Optional[CapacityConfig] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._appointments = appointments
        self._ledger = ledger
        self._directory = directory
        self._bus = bus
        self._booking_config = booking_config or BookingConfig()
        self._capacity_config = capacity_config or CapacityConfig()
        self._today = today
        self._date_locks: dict[date, threading.Lock] = {}
        self._date_locks_guard = threading.Lock()

    # --- Helpers ---

    def _date_lock(self, day: date) -> threading.Lock:
        with self._date_locks_guard:
            return self._date_locks.setdefault(day, threading.Lock())

    def _emit(
        self,
        kind: EventKind,
        appointment: Appointment,
        previous_status: Optional[AppointmentStatus] = None,
        actor_id: Optional[int] = None,
        **extra: Any,
    ) -> None:
        self._bus.publish(AppointmentEvent(
            kind=kind,
            appointment=appointment,
            previous_status=previous_status,
            actor_id=actor_id,
            extra=extra,
        ))

    def _resolve_service_id(self, raw: str) -> str:
        for candidate in (raw, match_service(raw)):
            if not candidate:
                continue
            try:
                return self._ledger.get_service(candidate).id
            except NotFoundError:
                continue
        raise NotFoundError("Service", raw)

    def _validate_slot(self, day: date, time_slot: str) -> None:
        labels = self._ledger.time_slots
        if labels and time_slot not in labels:
            raise ValidationError(
                f"Unknown time slot {time_slot!r}. Valid slots: {', '.join(labels)}",
                ["time_slot"],
            )
        if not self._booking_config.allow_past_dates and day < self._today():
            raise ValidationError(
                f"Appointment date {day.isoformat()} is in the past", ["appointment_date"]
            )

    def _release_capacity(self, appointment: Appointment) -> None:
        if self._capacity_config.release_on_cancel:
            self._ledger.release(appointment.service_id)

    def _commit_status(self, appointment: Appointment, new_status: AppointmentStatus) -> Appointment:
        old_status = appointment.status
        appointment.status = new_status
        appointment.updated_at = utcnow()
        saved = self._appointments.save(appointment)
        logger.info(
            "Appointment %s: %s -> %s", saved.id, old_status.value, new_status.value
        )
        return saved

    # --- Queries ---

    def get(self, appointment_id: int) -> Appointment:
        return self._appointments.get(appointment_id)

    def _newest_first(self, predicate: Callable[[Appointment], bool]) -> list[Appointment]:
        rows = self._appointments.list(predicate)
        return sorted(rows, key=lambda a: (a.created_at, a.id or 0), reverse=True)

    def list_for_customer(self, customer_id: int) -> list[Appointment]:
        return self._newest_first(lambda a: a.customer_id == customer_id)

    def list_for_employee(self, employee_id: int) -> list[Appointment]:
        return self._newest_first(lambda a: a.assigned_employee_id == employee_id)

    def list_all(self, status: Optional[Union[str, AppointmentStatus]] = None) -> list[Appointment]:
        wanted = parse_status(status) if status is not None else None
        return self._newest_first(lambda a: wanted is None or a.status == wanted)

    def get_status(self, appointment_id: int) -> AppointmentStatus:
        return self._appointments.get(appointment_id).status

    # --- Operations ---

    def create(
        self, booking_request: Union[BookingRequest, dict], customer_id: int
    ) -> Appointment:
        """Book a slot for ``customer_id`` and persist it as PENDING.

        Raises:
            ValidationError: Malformed request, unknown slot label or past date.
            NotFoundError: Unknown customer or service.
            ForbiddenError: The booking user is not a customer.
            ConflictError: Slot taken (``slot_taken``) or no capacity left
                (``capacity_exhausted`` / ``service_inactive``).
        """
        request = parse_booking_request(booking_request)
        customer = self._directory.resolve_user(customer_id)
        if customer.role != Role.CUSTOMER:
            raise ForbiddenError("Only customers can book appointments")
        service = self._ledger.get_service(self._resolve_service_id(request.service_id))
        self._validate_slot(request.appointment_date, request.time_slot)

        with self._date_lock(request.appointment_date):
            if request.time_slot in self._ledger.booked_slots(request.appointment_date):
                raise ConflictError(
                    f"Time slot {request.time_slot} on "
                    f"{request.appointment_date.isoformat()} is already booked",
                    ConflictError.SLOT_TAKEN,
                )
            outcome = self._ledger.reserve(service.id)
            if outcome is not ReserveOutcome.RESERVED:
                raise outcome.as_conflict(service.id)
            try:
                appointment = self._appointments.add(Appointment(
                    customer_id=customer.id,
                    vehicle=request.vehicle,
                    service_id=service.id,
                    service_category=service.category,
                    service_type=service.name,
                    additional_requirements=request.additional_requirements or "",
                    appointment_date=request.appointment_date,
                    time_slot=request.time_slot,
                ))
            except StorageError:
                self._ledger.release(service.id)
                raise

        logger.info(
            "Appointment %s created for customer %s: %s on %s %s",
            appointment.id, customer.id, service.id,
            appointment.appointment_date.isoformat(), appointment.time_slot,
        )
        self._emit(EventKind.APPOINTMENT_CREATED, appointment, actor_id=customer.id)
        return appointment

    def approve(self, appointment_id: int) -> Appointment:
        """Admin confirmation: PENDING -> CONFIRMED."""
        with self._appointments.locked(appointment_id):
            appointment = self._appointments.get(appointment_id)
            if appointment.status != AppointmentStatus.PENDING:
                raise InvalidStateError("Only pending appointments can be approved")
            previous = appointment.status
            saved = self._commit_status(appointment, AppointmentStatus.CONFIRMED)
        self._emit(EventKind.APPOINTMENT_CONFIRMED, saved, previous)
        return saved

    def reject(self, appointment_id: int) -> Appointment:
        """Admin rejection: any non-terminal state -> CANCELLED."""
        with self._appointments.locked(appointment_id):
            appointment = self._appointments.get(appointment_id)
            if is_terminal(appointment.status):
                raise InvalidStateError(
                    f"Cannot reject an appointment that is {appointment.status.value}"
                )
            previous = appointment.status
            saved = self._commit_status(appointment, AppointmentStatus.CANCELLED)
            self._release_capacity(saved)
        self._emit(EventKind.APPOINTMENT_REJECTED, saved, previous)
        return saved

    def assign_employee(self, appointment_id: int, employee_id: int) -> Appointment:
        """Assign an employee and move the appointment to IN_SERVICE.

        Allowed from any non-terminal state unless ``assign_requires_confirmed``
        is set. Reassigning an appointment already IN_SERVICE only swaps the
        employee and notifies the new one.
        """
        employee = self._directory.resolve_user(employee_id)
        if employee.role != Role.EMPLOYEE:
            raise ValidationError(f"User {employee_id} is not an employee", ["employee_id"])

        with self._appointments.locked(appointment_id):
            appointment = self._appointments.get(appointment_id)
            previous = appointment.status
            if is_terminal(previous):
                raise InvalidStateError(
                    f"Cannot assign an employee to a {previous.value} appointment"
                )
            if self._booking_config.assign_requires_confirmed and previous not in (
                AppointmentStatus.CONFIRMED, AppointmentStatus.IN_SERVICE,
            ):
                raise InvalidStateError("Only confirmed appointments can be assigned")
            if previous == AppointmentStatus.IN_SERVICE and appointment.assigned_employee_id == employee.id:
                return appointment

            appointment.assigned_employee_id = employee.id
            if previous == AppointmentStatus.IN_SERVICE:
                appointment.updated_at = utcnow()
                saved = self._appointments.save(appointment)
                kind = EventKind.EMPLOYEE_REASSIGNED
                logger.info("Appointment %s reassigned to employee %s", saved.id, employee.id)
            else:
                saved = self._commit_status(appointment, AppointmentStatus.IN_SERVICE)
                kind = EventKind.EMPLOYEE_ASSIGNED
        self._emit(kind, saved, previous)
        return saved

    def set_status(
        self,
        appointment_id: int,
        new_status: Union[str, AppointmentStatus],
        actor_role: Union[str, Role],
        actor_id: Optional[int] = None,
    ) -> Appointment:
        """Staff status update along the legal edges.

        Pushing the status the appointment already has is a silent no-op:
        nothing is written and no notification is produced.
        """
        target = parse_status(new_status)
        role = _parse_role(actor_role)
        if role == Role.CUSTOMER:
            raise ForbiddenError("Customers cannot update appointment status")
        if role == Role.EMPLOYEE and actor_id is None:
            raise ValidationError(
                "Employee status updates must name the acting employee", ["actor_id"]
            )

        with self._appointments.locked(appointment_id):
            appointment = self._appointments.get(appointment_id)
            if (
                role == Role.EMPLOYEE
                and appointment.assigned_employee_id not in (None, actor_id)
            ):
                raise ForbiddenError("Appointment is assigned to another employee")
            previous = appointment.status
            if target == previous:
                logger.debug("Appointment %s already %s; no-op", appointment_id, target.value)
                return appointment
            if not can_transition(previous, target):
                allowed = [s.value for s in valid_targets(previous)]
                raise InvalidStateError(
                    f"Cannot move appointment from {previous.value} to {target.value}. "
                    f"Valid targets: {allowed}"
                )
            if target == AppointmentStatus.IN_SERVICE and appointment.assigned_employee_id is None:
                if role == Role.EMPLOYEE:
                    appointment.assigned_employee_id = actor_id
                else:
                    raise InvalidStateError("Assign an employee before starting service")
            saved = self._commit_status(appointment, target)
            if target == AppointmentStatus.CANCELLED:
                self._release_capacity(saved)
        self._emit(EventKind.STATUS_CHANGED, saved, previous, actor_id)
        return saved

    def cancel(self, appointment_id: int, customer_id: int) -> None:
        """Customer cancellation of their own appointment.

        Raises:
            ForbiddenError: The appointment belongs to someone else.
            InvalidStateError: Already cancelled, or completed.
        """
        with self._appointments.locked(appointment_id):
            appointment = self._appointments.get(appointment_id)
            if appointment.customer_id != customer_id:
                raise ForbiddenError("You are not authorized to cancel this appointment")
            if appointment.status == AppointmentStatus.CANCELLED:
                raise InvalidStateError("Appointment is already cancelled")
            if appointment.status == AppointmentStatus.COMPLETED:
                raise InvalidStateError("Completed appointments cannot be cancelled")
            previous = appointment.status
            saved = self._commit_status(appointment, AppointmentStatus.CANCELLED)
            self._release_capacity(saved)
        self._emit(EventKind.APPOINTMENT_CANCELLED_BY_CUSTOMER, saved, previous, customer_id)

    def reschedule(
        self,
        appointment_id: int,
        edit: Union[AppointmentEdit, dict],
        actor_id: Optional[int] = None,
    ) -> Appointment:
        """Apply a new date/slot (and optionally service) to an editable appointment.

        The new slot is re-validated exactly like a new booking. When the
        service changes, capacity moves in one step: the new service is
        charged first and the old one credited only if that succeeded.
        Authorization is the caller's job (see ChangeRequestAdjudicator).
        """
        changes = parse_appointment_edit(edit)
        new_service_id = (
            self._resolve_service_id(changes.service_id) if changes.service_id else None
        )
        self._validate_slot(changes.appointment_date, changes.time_slot)

        with self._appointments.locked(appointment_id):
            appointment = self._appointments.get(appointment_id)
            if appointment.status not in EDITABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot update appointments in {appointment.status.value} state"
                )
            target_service = self._ledger.get_service(new_service_id or appointment.service_id)
            with self._date_lock(changes.appointment_date):
                booked = self._ledger.booked_slots(
                    changes.appointment_date, exclude_appointment_id=appointment.id
                )
                if changes.time_slot in booked:
                    raise ConflictError(
                        f"Time slot {changes.time_slot} on "
                        f"{changes.appointment_date.isoformat()} is already booked",
                        ConflictError.SLOT_TAKEN,
                    )
                outcome = self._ledger.transfer(appointment.service_id, target_service.id)
                if outcome is not ReserveOutcome.RESERVED:
                    raise outcome.as_conflict(target_service.id)
                appointment.appointment_date = changes.appointment_date
                appointment.time_slot = changes.time_slot
                appointment.service_id = target_service.id
                appointment.service_category = target_service.category
                appointment.service_type = target_service.name
                if changes.additional_requirements is not None:
                    appointment.additional_requirements = changes.additional_requirements
                appointment.updated_at = utcnow()
                saved = self._appointments.save(appointment)

        logger.info(
            "Appointment %s rescheduled to %s %s (%s)",
            saved.id, saved.appointment_date.isoformat(), saved.time_slot, saved.service_id,
        )
        self._emit(EventKind.APPOINTMENT_UPDATED, saved, saved.status, actor_id)
        return saved
