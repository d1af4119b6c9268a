"""
Process-wide lifecycle object.

``build_service_desk`` wires repositories, the push channel, the ledger,
the state machine, the adjudicator and the notification fan-out once at
startup. Everything that used to be an ambient singleton hangs off the
returned ServiceDesk, which is passed explicitly to the HTTP shell, the
scheduler process and the tests.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from asms.config import AppConfig, settings
from asms.core.capacity import CapacityLedger
from asms.core.change_requests import ChangeRequestAdjudicator
from asms.core.events import EventBus
from asms.core.notifications import NotificationDispatcher, NotificationFanout
from asms.core.state_machine import AppointmentStateMachine
from asms.logging_context import get_request_logger
from asms.schemas.appointment_schema import Appointment
from asms.schemas.change_request_schema import ChangeRequest
from asms.schemas.notification_schema import Notification
from asms.schemas.service_schema import ServiceCapacity
from asms.schemas.user_schema import Role, UserRecord
from asms.storage.memory import InMemoryRepository
from asms.tools.push import InMemoryPushChannel
from asms.tools.services import get_all_services
from asms.tools.users import InMemoryUserDirectory

if TYPE_CHECKING:
    from apscheduler.schedulers.background import BackgroundScheduler

logger = get_request_logger(__name__)


@dataclass
class ServiceDesk:
    """Everything the core needs for one running process."""

    config: AppConfig
    directory: InMemoryUserDirectory
    channel: InMemoryPushChannel
    bus: EventBus
    services: InMemoryRepository[ServiceCapacity]
    appointments_repo: InMemoryRepository[Appointment]
    requests_repo: InMemoryRepository[ChangeRequest]
    notifications_repo: InMemoryRepository[Notification]
    ledger: CapacityLedger
    appointments: AppointmentStateMachine
    change_requests: ChangeRequestAdjudicator
    notifications: NotificationDispatcher
    fanout: NotificationFanout
    scheduler: Optional["BackgroundScheduler"] = field(default=None, repr=False)

    def seed_catalog(self) -> int:
        """Register every catalog service that is not registered yet."""
        existing = set(self.services.ids())
        added = 0
        for entry in get_all_services():
            if entry["id"] in existing:
                continue
            self.ledger.register_service(
                entry["id"],
                entry["name"],
                entry["category"],
                entry["max_daily_slots"],
                entry["description"],
            )
            added += 1
        return added

    def ensure_admin(self) -> Optional[UserRecord]:
        """Create the configured admin account when the roster has no admin."""
        if self.directory.list_admins():
            return None
        admin_cfg = self.config.admin
        admin = self.directory.add_user(
            admin_cfg.username, Role.ADMIN, admin_cfg.display_name, admin_cfg.email
        )
        logger.info("Bootstrapped admin account '%s'", admin.username)
        return admin

    def bootstrap(self, seed_catalog: bool = True) -> "ServiceDesk":
        self.ensure_admin()
        if seed_catalog:
            added = self.seed_catalog()
            logger.info("Service catalog seeded with %d services", added)
        return self

    def start_scheduler(self) -> "BackgroundScheduler":
        """Start the daily capacity sweep in this process. Idempotent."""
        from asms.jobs.scheduler import build_scheduler

        if self.scheduler is None:
            self.scheduler = build_scheduler(self)
            self.scheduler.start()
            logger.info("Capacity sweep scheduler started")
        return self.scheduler

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=wait)
        self.scheduler = None
        logger.info("Capacity sweep scheduler stopped")


def build_service_desk(
    config: Optional[AppConfig] = None,
    directory: Optional[InMemoryUserDirectory] = None,
    channel: Optional[InMemoryPushChannel] = None,
) -> ServiceDesk:
    """Wire a ServiceDesk. Call ``bootstrap()`` on the result to seed admin and catalog."""
    cfg = config or settings
    directory = directory or InMemoryUserDirectory()
    channel = channel or InMemoryPushChannel(cfg.notifications.subscriber_queue_size)
    bus = EventBus()

    services: InMemoryRepository[ServiceCapacity] = InMemoryRepository("Service")
    appointments_repo: InMemoryRepository[Appointment] = InMemoryRepository("Appointment")
    requests_repo: InMemoryRepository[ChangeRequest] = InMemoryRepository("ChangeRequest")
    notifications_repo: InMemoryRepository[Notification] = InMemoryRepository("Notification")

    ledger = CapacityLedger(
        services,
        appointments_repo,
        cfg.capacity,
        cfg.booking,
        cfg.business.time_slots,
    )
    machine = AppointmentStateMachine(
        appointments_repo, ledger, directory, bus, cfg.booking, cfg.capacity
    )
    adjudicator = ChangeRequestAdjudicator(requests_repo, machine, bus)
    dispatcher = NotificationDispatcher(notifications_repo, directory, channel, cfg.notifications)
    fanout = NotificationFanout(dispatcher, directory)
    fanout.attach(bus)

    return ServiceDesk(
        config=cfg,
        directory=directory,
        channel=channel,
        bus=bus,
        services=services,
        appointments_repo=appointments_repo,
        requests_repo=requests_repo,
        notifications_repo=notifications_repo,
        ledger=ledger,
        appointments=machine,
        change_requests=adjudicator,
        notifications=dispatcher,
        fanout=fanout,
    )
