"""
Notification dispatcher and the event-to-notification fan-out.

The persisted inbox row is the source of truth. The live push that follows
it is best-effort: a recipient who is offline, or whose stream is too slow,
finds the row on the next poll of their inbox. Storage failures propagate;
push failures are logged and swallowed.

Which recipients hear about which event, and with what wording, is data:
see EVENT_TEMPLATES and STATUS_TEMPLATES.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from asms.config import NotificationConfig
from asms.core.events import AppointmentEvent, EventBus, EventKind
from asms.errors import ForbiddenError, NotFoundError, PushDeliveryError
from asms.logging_context import get_request_logger
from asms.schemas.appointment_schema import AppointmentStatus
from asms.schemas.change_request_schema import RequestStatus
from asms.schemas.notification_schema import Notification, NotificationType, PushMessage
from asms.storage.memory import InMemoryRepository
from asms.tools.push import ADMIN_BROADCAST, InMemoryPushChannel, user_channel
from asms.tools.users import UserDirectory
from asms.utils import utcnow

logger = get_request_logger(__name__)


def _newest_first(notifications: list[Notification]) -> list[Notification]:
    return sorted(notifications, key=lambda n: (n.created_at, n.id or 0), reverse=True)


class NotificationDispatcher:
    """Persists per-recipient inbox rows and pushes them on live channels."""

    def __init__(
        self,
        notifications: InMemoryRepository[Notification],
        directory: UserDirectory,
        channel: InMemoryPushChannel,
        config: Optional[NotificationConfig] = None,
    ) -> None:
        self._notifications = notifications
        self._directory = directory
        self._channel = channel
        self._config = config or NotificationConfig()

    def _push(self, key: str, payload: dict[str, Any]) -> None:
        try:
            self._channel.publish(key, payload, timeout=self._config.push_timeout_sec)
        except PushDeliveryError as exc:
            logger.warning("Live push on %s failed: %s", key, exc.message)

    def dispatch(
        self,
        recipient_id: int,
        appointment_id: Optional[int],
        title: str,
        message: str,
        type: NotificationType,
    ) -> Notification:
        """Persist one notification for ``recipient_id`` and push it on their channel.

        Raises:
            StorageError: If the inbox row could not be written.
        """
        notification = self._notifications.add(Notification(
            recipient_id=recipient_id,
            appointment_id=appointment_id,
            title=title,
            message=message,
            type=type,
        ))
        logger.debug(
            "Notification %s (%s) stored for user %s",
            notification.id, type.value, recipient_id,
        )
        self._push(
            user_channel(recipient_id),
            PushMessage.from_notification(notification).to_payload(),
        )
        return notification

    def dispatch_to_all_admins(
        self,
        appointment_id: Optional[int],
        title: str,
        message: str,
        type: NotificationType,
    ) -> list[Notification]:
        """One inbox row per current admin, plus one push on the admin broadcast channel."""
        admins = self._directory.list_admins()
        rows: list[Notification] = []
        if admins:
            workers = min(self._config.fanout_workers, len(admins))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(
                        contextvars.copy_context().run,
                        self.dispatch, admin.id, appointment_id, title, message, type,
                    )
                    for admin in admins
                ]
                rows = [future.result() for future in futures]
        broadcast = PushMessage(
            appointment_id=appointment_id,
            title=title,
            message=message,
            type=type,
        )
        self._push(ADMIN_BROADCAST, broadcast.to_payload())
        logger.info("Admin broadcast '%s' fanned out to %d admins", title, len(rows))
        return rows

    # --- Inbox operations ---

    def _owned(self, notification_id: int, requester_id: int) -> Notification:
        notification = self._notifications.get(notification_id)
        if notification.recipient_id != requester_id:
            raise ForbiddenError("Unauthorized access to notification")
        return notification

    def get(self, notification_id: int, requester_id: int) -> Notification:
        return self._owned(notification_id, requester_id)

    def mark_read(self, notification_id: int, requester_id: int) -> Notification:
        with self._notifications.locked(notification_id):
            notification = self._owned(notification_id, requester_id)
            if notification.is_read:
                return notification
            notification.is_read = True
            notification.read_at = utcnow()
            return self._notifications.save(notification)

    def mark_all_read(self, requester_id: int) -> int:
        """Mark every unread notification of ``requester_id`` as read. Returns how many changed."""
        changed = 0
        now = utcnow()
        for pending in self.list_unread(requester_id):
            with self._notifications.locked(pending.id):
                notification = self._notifications.find(pending.id)
                if notification is None or notification.is_read:
                    continue
                notification.is_read = True
                notification.read_at = now
                self._notifications.save(notification)
                changed += 1
        return changed

    def delete(self, notification_id: int, requester_id: int) -> None:
        with self._notifications.locked(notification_id):
            self._owned(notification_id, requester_id)
            self._notifications.delete(notification_id)

    def unread_count(self, recipient_id: int) -> int:
        return self._notifications.count(
            lambda n: n.recipient_id == recipient_id and not n.is_read
        )

    def list(self, recipient_id: int) -> list[Notification]:
        return _newest_first(self._notifications.list(lambda n: n.recipient_id == recipient_id))

    def list_unread(self, recipient_id: int) -> list[Notification]:
        return _newest_first(self._notifications.list(
            lambda n: n.recipient_id == recipient_id and not n.is_read
        ))


class Audience(str, Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"
    ADMINS = "admins"


@dataclass(frozen=True)
class Delivery:
    """One recipient class, the wording it receives and the notification type."""

    audience: Audience
    title: str
    message: str
    type: NotificationType


@dataclass(frozen=True)
class StatusTemplate:
    """Wording for a status change, keyed by destination status."""

    title: str
    customer_message: str
    type: NotificationType
    admin_title: Optional[str] = None
    admin_message: Optional[str] = None

    def deliveries(self) -> tuple[Delivery, ...]:
        items = [Delivery(Audience.CUSTOMER, self.title, self.customer_message, self.type)]
        if self.admin_title and self.admin_message:
            items.append(Delivery(Audience.ADMINS, self.admin_title, self.admin_message, self.type))
        return tuple(items)


STATUS_TEMPLATES: dict[AppointmentStatus, StatusTemplate] = {
    AppointmentStatus.IN_SERVICE: StatusTemplate(
        "Service Started",
        "Your {vehicle} service has been started.",
        NotificationType.STATUS_CHANGED_IN_SERVICE,
        "Service Started",
        "Service started for {vehicle} (Customer: {customer})",
    ),
    AppointmentStatus.READY: StatusTemplate(
        "Vehicle Ready for Pickup",
        "Good news! Your {vehicle} is ready for pickup.",
        NotificationType.STATUS_CHANGED_READY,
        "Service Ready",
        "{vehicle} is ready for pickup (Customer: {customer})",
    ),
    AppointmentStatus.COMPLETED: StatusTemplate(
        "Service Completed",
        "Your {vehicle} service has been completed successfully. "
        "Thank you for choosing us!",
        NotificationType.STATUS_CHANGED_COMPLETED,
        "Service Completed",
        "Service completed for {vehicle} (Customer: {customer})",
    ),
    AppointmentStatus.CANCELLED: StatusTemplate(
        "Appointment Cancelled",
        "Your appointment for {vehicle} has been cancelled.",
        NotificationType.APPOINTMENT_CANCELLED,
        "Appointment Cancelled",
        "Appointment cancelled for {vehicle}",
    ),
}

GENERIC_STATUS_TEMPLATE = StatusTemplate(
    "Status Updated",
    "Your appointment for {vehicle} status has been updated to {status}.",
    NotificationType.GENERAL,
)

_ASSIGNED = Delivery(
    Audience.EMPLOYEE,
    "New Appointment Assigned",
    "You have been assigned to service {vehicle} (Reg: {plate})",
    NotificationType.EMPLOYEE_ASSIGNED,
)

EVENT_TEMPLATES: dict[EventKind, tuple[Delivery, ...]] = {
    EventKind.APPOINTMENT_CREATED: (
        Delivery(
            Audience.CUSTOMER,
            "Appointment Created",
            "Your appointment for {vehicle} has been created successfully. Status: {status}",
            NotificationType.APPOINTMENT_CREATED,
        ),
        Delivery(
            Audience.ADMINS,
            "New Appointment",
            "New appointment created by {customer} for {vehicle} on {date} {slot}",
            NotificationType.APPOINTMENT_CREATED,
        ),
    ),
    EventKind.APPOINTMENT_CONFIRMED: (
        Delivery(
            Audience.CUSTOMER,
            "Appointment Confirmed",
            "Your appointment for {vehicle} has been confirmed by admin.",
            NotificationType.APPOINTMENT_CONFIRMED,
        ),
    ),
    EventKind.APPOINTMENT_REJECTED: (
        Delivery(
            Audience.CUSTOMER,
            "Appointment Cancelled",
            "Your appointment for {vehicle} has been cancelled by admin.",
            NotificationType.APPOINTMENT_CANCELLED,
        ),
    ),
    EventKind.APPOINTMENT_CANCELLED_BY_CUSTOMER: (
        Delivery(
            Audience.ADMINS,
            "Appointment Cancelled by Customer",
            "Customer {customer} cancelled appointment for {vehicle}",
            NotificationType.APPOINTMENT_CANCELLED,
        ),
        Delivery(
            Audience.EMPLOYEE,
            "Appointment Cancelled",
            "The appointment for {vehicle} has been cancelled by the customer.",
            NotificationType.APPOINTMENT_CANCELLED,
        ),
    ),
    EventKind.EMPLOYEE_ASSIGNED: (
        _ASSIGNED,
        Delivery(
            Audience.CUSTOMER,
            "Service Started",
            "Employee {employee} has been assigned to your appointment. "
            "Service is now in progress.",
            NotificationType.STATUS_CHANGED_IN_SERVICE,
        ),
        Delivery(
            Audience.ADMINS,
            "Service Started",
            "{employee} assigned to {vehicle} (Customer: {customer})",
            NotificationType.STATUS_CHANGED_IN_SERVICE,
        ),
    ),
    EventKind.EMPLOYEE_REASSIGNED: (_ASSIGNED,),
    EventKind.APPOINTMENT_UPDATED: (
        Delivery(
            Audience.ADMINS,
            "Appointment Updated",
            "{customer} moved the appointment for {vehicle} to {date} {slot}",
            NotificationType.APPOINTMENT_UPDATED,
        ),
    ),
    EventKind.CHANGE_REQUEST_SUBMITTED: (
        Delivery(
            Audience.ADMINS,
            "Change Request Submitted",
            "{customer} asked to change the appointment for {vehicle}: {reason}",
            NotificationType.CHANGE_REQUEST_SUBMITTED,
        ),
    ),
}

RESOLUTION_TEMPLATES: dict[RequestStatus, tuple[Delivery, ...]] = {
    RequestStatus.APPROVED: (
        Delivery(
            Audience.CUSTOMER,
            "Change Request Approved",
            "Your change request for {vehicle} was approved. You can now edit the "
            "appointment. {admin_response}",
            NotificationType.CHANGE_REQUEST_APPROVED,
        ),
    ),
    RequestStatus.REJECTED: (
        Delivery(
            Audience.CUSTOMER,
            "Change Request Rejected",
            "Your change request for {vehicle} was rejected. {admin_response}",
            NotificationType.CHANGE_REQUEST_REJECTED,
        ),
    ),
}


class NotificationFanout:
    """Event subscriber that turns lifecycle events into inbox notifications."""

    def __init__(self, dispatcher: NotificationDispatcher, directory: UserDirectory) -> None:
        self._dispatcher = dispatcher
        self._directory = directory

    def attach(self, bus: EventBus) -> None:
        bus.subscribe_all(self.handle)

    def _display_name(self, user_id: Optional[int]) -> str:
        if user_id is None:
            return "unassigned"
        try:
            return self._directory.resolve_user(user_id).display_name
        except NotFoundError:
            return f"user #{user_id}"

    def _deliveries_for(self, event: AppointmentEvent) -> tuple[Delivery, ...]:
        if event.kind is EventKind.STATUS_CHANGED:
            template = STATUS_TEMPLATES.get(event.appointment.status, GENERIC_STATUS_TEMPLATE)
            return template.deliveries()
        if event.kind is EventKind.CHANGE_REQUEST_RESOLVED:
            return RESOLUTION_TEMPLATES[event.extra["outcome"]]
        return EVENT_TEMPLATES.get(event.kind, ())

    def _context(self, event: AppointmentEvent) -> dict[str, Any]:
        appointment = event.appointment
        return {
            "vehicle": appointment.vehicle.label,
            "plate": appointment.vehicle.plate,
            "status": appointment.status.value,
            "date": appointment.appointment_date.isoformat(),
            "slot": appointment.time_slot,
            "customer": self._display_name(appointment.customer_id),
            "employee": self._display_name(appointment.assigned_employee_id),
            "reason": event.extra.get("reason", ""),
            "admin_response": event.extra.get("admin_response") or "",
        }

    def handle(self, event: AppointmentEvent) -> int:
        """Deliver every notification ``event`` calls for.

        Each recipient class is delivered independently; one failing
        delivery is logged and does not stop the others.

        Returns:
            Number of inbox rows created.
        """
        deliveries = self._deliveries_for(event)
        if not deliveries:
            return 0
        context = self._context(event)
        appointment = event.appointment
        created = 0
        for delivery in deliveries:
            title = delivery.title
            message = delivery.message.format(**context).strip()
            try:
                if delivery.audience is Audience.ADMINS:
                    created += len(self._dispatcher.dispatch_to_all_admins(
                        appointment.id, title, message, delivery.type
                    ))
                elif delivery.audience is Audience.CUSTOMER:
                    self._dispatcher.dispatch(
                        appointment.customer_id, appointment.id, title, message, delivery.type
                    )
                    created += 1
                elif appointment.assigned_employee_id is not None:
                    self._dispatcher.dispatch(
                        appointment.assigned_employee_id, appointment.id,
                        title, message, delivery.type,
                    )
                    created += 1
            except Exception:
                logger.exception(
                    "Fan-out of %s to %s failed for appointment %s",
                    event.kind.value, delivery.audience.value, appointment.id,
                )
        return created
