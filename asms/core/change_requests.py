"""
Change-request adjudication.

A customer may ask to change a PENDING or CONFIRMED appointment. An admin
approves or rejects the request exactly once. The most recent request of
an appointment decides whether its owner may edit date, slot and service:
an APPROVED latest request is a standing authorization until the customer
starts a new request cycle.
"""

import threading
from typing import Optional, Union

from asms.core.events import AppointmentEvent, EventBus, EventKind
from asms.core.state_machine import AppointmentStateMachine
from asms.errors import ConflictError, ForbiddenError, InvalidStateError, ValidationError
from asms.logging_context import get_request_logger
from asms.schemas.appointment_schema import EDITABLE_STATUSES, Appointment, AppointmentEdit
from asms.schemas.change_request_schema import ChangeRequest, RequestStatus
from asms.storage.memory import InMemoryRepository
from asms.utils import utcnow

logger = get_request_logger(__name__)

MAX_REASON_LENGTH = 2000


class ChangeRequestAdjudicator:
    """Customer submissions, admin decisions and the edit gate they control."""

    def __init__(
        self,
        requests: InMemoryRepository[ChangeRequest],
        machine: AppointmentStateMachine,
        bus: EventBus,
    ) -> None:
        self._requests = requests
        self._machine = machine
        self._bus = bus
        self._appointment_locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, appointment_id: int) -> threading.Lock:
        with self._guard:
            return self._appointment_locks.setdefault(appointment_id, threading.Lock())

    def _owned_appointment(self, appointment_id: int, customer_id: int) -> Appointment:
        appointment = self._machine.get(appointment_id)
        if appointment.customer_id != customer_id:
            raise ForbiddenError("You can only request changes for your own appointments")
        return appointment

    def _latest_for(self, appointment_id: int) -> Optional[ChangeRequest]:
        requests = self._requests.list(lambda r: r.appointment_id == appointment_id)
        if not requests:
            return None
        return max(requests, key=lambda r: (r.requested_at, r.id or 0))

    # --- Customer side ---

    def submit(self, appointment_id: int, reason: str, customer_id: int) -> ChangeRequest:
        """Open a PENDING change request.

        Raises:
            NotFoundError: Unknown appointment.
            ForbiddenError: Requester does not own the appointment.
            InvalidStateError: Appointment is not PENDING or CONFIRMED.
            ConflictError: A PENDING request already exists for it.
            ValidationError: Empty or oversized reason.
        """
        text = (reason or "").strip()
        if not text:
            raise ValidationError("A reason is required for a change request", ["reason"])
        if len(text) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"Reason must be at most {MAX_REASON_LENGTH} characters", ["reason"]
            )

        with self._lock_for(appointment_id):
            appointment = self._owned_appointment(appointment_id, customer_id)
            if appointment.status not in EDITABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot request changes for appointments in {appointment.status.value} state"
                )
            pending = self._requests.count(
                lambda r: r.appointment_id == appointment_id and r.status == RequestStatus.PENDING
            )
            if pending:
                raise ConflictError(
                    "There is already a pending change request for this appointment",
                    ConflictError.PENDING_REQUEST_EXISTS,
                )
            request = self._requests.add(ChangeRequest(
                appointment_id=appointment_id,
                customer_id=customer_id,
                reason=text,
            ))

        logger.info("Change request %s submitted for appointment %s", request.id, appointment_id)
        self._bus.publish(AppointmentEvent(
            kind=EventKind.CHANGE_REQUEST_SUBMITTED,
            appointment=appointment,
            actor_id=customer_id,
            extra={"request_id": request.id, "reason": text},
        ))
        return request

    def can_edit(self, appointment_id: int, customer_id: int) -> bool:
        """True iff the customer owns the appointment and its latest request is APPROVED."""
        appointment = self._machine.get(appointment_id)
        if appointment.customer_id != customer_id:
            return False
        latest = self._latest_for(appointment_id)
        return latest is not None and latest.status == RequestStatus.APPROVED

    def apply_edit(
        self,
        appointment_id: int,
        edit: Union[AppointmentEdit, dict],
        customer_id: int,
    ) -> Appointment:
        """Apply an approved change through the state machine's slot-checked reschedule."""
        if not self.can_edit(appointment_id, customer_id):
            raise ForbiddenError("No approved change request found for this appointment")
        return self._machine.reschedule(appointment_id, edit, actor_id=customer_id)

    # --- Admin side ---

    def _resolve(self, request_id: int, outcome: RequestStatus, admin_note: Optional[str]) -> ChangeRequest:
        with self._requests.locked(request_id):
            request = self._requests.get(request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidStateError("Request has already been processed")
            request.status = outcome
            request.admin_response = admin_note
            request.responded_at = utcnow()
            saved = self._requests.save(request)

        logger.info("Change request %s %s", saved.id, outcome.value.lower())
        self._bus.publish(AppointmentEvent(
            kind=EventKind.CHANGE_REQUEST_RESOLVED,
            appointment=self._machine.get(saved.appointment_id),
            extra={
                "request_id": saved.id,
                "outcome": outcome,
                "admin_response": admin_note,
            },
        ))
        return saved

    def approve(self, request_id: int, admin_note: Optional[str] = None) -> ChangeRequest:
        return self._resolve(request_id, RequestStatus.APPROVED, admin_note)

    def reject(self, request_id: int, admin_note: Optional[str] = None) -> ChangeRequest:
        return self._resolve(request_id, RequestStatus.REJECTED, admin_note)

    # --- Queries ---

    def get(self, request_id: int) -> ChangeRequest:
        return self._requests.get(request_id)

    def _newest_first(self, requests: list[ChangeRequest]) -> list[ChangeRequest]:
        return sorted(requests, key=lambda r: (r.requested_at, r.id or 0), reverse=True)

    def list_for_customer(self, customer_id: int) -> list[ChangeRequest]:
        return self._newest_first(self._requests.list(lambda r: r.customer_id == customer_id))

    def list_pending(self) -> list[ChangeRequest]:
        return self._newest_first(self._requests.list(lambda r: r.status == RequestStatus.PENDING))

    def list_all(self) -> list[ChangeRequest]:
        return self._newest_first(self._requests.list())
