from asms.core.capacity import CapacityLedger, ReserveOutcome
from asms.core.change_requests import ChangeRequestAdjudicator
from asms.core.events import AppointmentEvent, EventBus, EventKind
from asms.core.lifecycle import ServiceDesk, build_service_desk
from asms.core.notifications import NotificationDispatcher, NotificationFanout
from asms.core.state_machine import AppointmentStateMachine, can_transition, valid_targets

__all__ = [
    "CapacityLedger",
    "ReserveOutcome",
    "AppointmentStateMachine",
    "can_transition",
    "valid_targets",
    "ChangeRequestAdjudicator",
    "NotificationDispatcher",
    "NotificationFanout",
    "EventBus",
    "EventKind",
    "AppointmentEvent",
    "ServiceDesk",
    "build_service_desk",
]
