"""Shared test fixtures and helpers."""

from datetime import date, timedelta
from typing import Optional

import pytest

from asms.config import AppConfig
from asms.core.lifecycle import ServiceDesk, build_service_desk
from asms.schemas.user_schema import Role, UserRecord
from asms.tools.users import InMemoryUserDirectory


def future_date(days: int = 7) -> date:
    """A booking date safely in the future."""
    return date.today() + timedelta(days=days)


def make_booking(
    service_id: str = "oil-change",
    day: Optional[date] = None,
    time_slot: str = "09:00-10:00",
    plate: str = "WP-CAB-1234",
    **extra,
) -> dict:
    """Helper to build a raw booking request payload."""
    return {
        "vehicle": {
            "vehicle_type": "Car",
            "brand": "Toyota",
            "model": "Corolla",
            "year": 2018,
            "plate": plate,
            "fuel_type": "Petrol",
        },
        "service_id": service_id,
        "appointment_date": (day or future_date()).isoformat(),
        "time_slot": time_slot,
        **extra,
    }


def make_directory() -> InMemoryUserDirectory:
    return InMemoryUserDirectory([
        UserRecord(id=1, username="admin", role=Role.ADMIN, display_name="Workshop Admin"),
        UserRecord(id=2, username="mike", role=Role.EMPLOYEE, display_name="Mike Mechanic"),
        UserRecord(id=3, username="erin", role=Role.EMPLOYEE, display_name="Erin Electrician"),
        UserRecord(id=4, username="alice", role=Role.CUSTOMER, display_name="Alice Perera"),
        UserRecord(id=5, username="bob", role=Role.CUSTOMER, display_name="Bob Silva"),
    ])


ADMIN_ID = 1
EMPLOYEE_ID = 2
OTHER_EMPLOYEE_ID = 3
CUSTOMER_ID = 4
OTHER_CUSTOMER_ID = 5


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def desk(config) -> ServiceDesk:
    return build_service_desk(config, directory=make_directory()).bootstrap()


@pytest.fixture
def machine(desk):
    return desk.appointments


@pytest.fixture
def ledger(desk):
    return desk.ledger


@pytest.fixture
def adjudicator(desk):
    return desk.change_requests


@pytest.fixture
def dispatcher(desk):
    return desk.notifications


@pytest.fixture
def booked(machine):
    """One PENDING oil-change appointment owned by the default customer."""
    return machine.create(make_booking(), CUSTOMER_ID)


def total_notifications(desk: ServiceDesk) -> int:
    return desk.notifications_repo.count()
