"""
In-process domain event bus between the state machine and its subscribers.

Events are published only after the state change they describe has been
committed. A failing subscriber is logged and isolated: it never rolls
back the change and never prevents later subscribers from running.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from asms.logging_context import get_request_logger
from asms.schemas.appointment_schema import Appointment, AppointmentStatus

logger = get_request_logger(__name__)


class EventKind(str, Enum):
    """Lifecycle events emitted by the state machine and the adjudicator."""

    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_REJECTED = "appointment_rejected"
    APPOINTMENT_CANCELLED_BY_CUSTOMER = "appointment_cancelled_by_customer"
    EMPLOYEE_ASSIGNED = "employee_assigned"
    EMPLOYEE_REASSIGNED = "employee_reassigned"
    STATUS_CHANGED = "status_changed"
    APPOINTMENT_UPDATED = "appointment_updated"
    CHANGE_REQUEST_SUBMITTED = "change_request_submitted"
    CHANGE_REQUEST_RESOLVED = "change_request_resolved"


@dataclass(frozen=True)
class AppointmentEvent:
    """A committed change to one appointment (or to a request against it)."""

    kind: EventKind
    appointment: Appointment
    previous_status: Optional[AppointmentStatus] = None
    actor_id: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[AppointmentEvent], None]


class EventBus:
    """Synchronous publish/subscribe keyed by EventKind."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(kind, []).append(handler)
        logger.debug("Handler %r subscribed to %s", handler, kind.value)

    def subscribe_all(self, handler: EventHandler) -> None:
        for kind in EventKind:
            self.subscribe(kind, handler)

    def publish(self, event: AppointmentEvent) -> int:
        """Deliver ``event`` to its handlers in registration order.

        Returns:
            Number of handlers that completed without raising.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.kind, []))
        succeeded = 0
        for handler in handlers:
            try:
                handler(event)
                succeeded += 1
            except Exception:
                logger.exception(
                    "Subscriber %r failed for %s on appointment %s; state change kept",
                    handler, event.kind.value, event.appointment.id,
                )
        return succeeded
