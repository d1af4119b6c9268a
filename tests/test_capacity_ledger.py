"""Tests for the capacity ledger: counters, activation and slot occupancy."""

import threading
from dataclasses import replace

import pytest

from asms.config import BookingConfig, CapacityConfig
from asms.core.capacity import CapacityLedger, ReserveOutcome
from asms.errors import ConflictError, NotFoundError, StorageError, ValidationError
from asms.schemas.appointment_schema import Appointment, AppointmentStatus, VehicleInfo
from asms.storage.memory import InMemoryRepository
from tests.conftest import future_date


def make_ledger(capacity_config=None, booking_config=None, slots=("09:00-10:00", "10:00-11:00")):
    return CapacityLedger(
        InMemoryRepository("Service"),
        InMemoryRepository("Appointment"),
        capacity_config or CapacityConfig(),
        booking_config or BookingConfig(),
        slots,
    )


def add_appointment(ledger, day, slot, status=AppointmentStatus.PENDING):
    return ledger._appointments.add(Appointment(
        customer_id=4,
        vehicle=VehicleInfo(vehicle_type="Car", brand="Honda", plate="AB-1"),
        service_id="svc",
        appointment_date=day,
        time_slot=slot,
        status=status,
    ))


class TestRegistration:
    def test_register_starts_full(self):
        ledger = make_ledger()
        svc = ledger.register_service("svc", "Service", "Repair", 3)
        assert svc.available_slots == 3
        assert svc.max_daily_slots == 3
        assert svc.is_active

    def test_register_uses_default_capacity(self):
        ledger = make_ledger(CapacityConfig(default_max_daily_slots=6))
        assert ledger.register_service("svc", "Service", "Repair").max_daily_slots == 6

    def test_explicit_zero_capacity_rejected(self):
        ledger = make_ledger(CapacityConfig(default_max_daily_slots=5))
        with pytest.raises(ValidationError) as exc_info:
            ledger.register_service("svc", "Service", "Repair", 0)
        assert "max_daily_slots" in exc_info.value.fields
        assert ledger.list_services() == []

    def test_duplicate_registration_fails(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 3)
        with pytest.raises(StorageError):
            ledger.register_service("svc", "Service", "Repair", 3)

    def test_unknown_service_not_found(self):
        with pytest.raises(NotFoundError):
            make_ledger().reserve("missing")

    def test_list_services_active_only(self):
        ledger = make_ledger()
        ledger.register_service("a", "A", "X", 1)
        ledger.register_service("b", "B", "X", 1)
        ledger.deactivate("b")
        assert [s.id for s in ledger.list_services()] == ["a", "b"]
        assert [s.id for s in ledger.list_services(active_only=True)] == ["a"]


class TestReserveRelease:
    def test_reserve_decrements(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 2)
        assert ledger.reserve("svc") is ReserveOutcome.RESERVED
        assert ledger.get_service("svc").available_slots == 1

    def test_last_slot_auto_deactivates(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 1)
        ledger.reserve("svc")
        svc = ledger.get_service("svc")
        assert svc.available_slots == 0
        assert not svc.is_active
        assert svc.auto_deactivated
        assert not ledger.can_reserve("svc")

    def test_exhausted_reports_outcome_without_change(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 1)
        ledger.reserve("svc")
        assert ledger.reserve("svc") is ReserveOutcome.EXHAUSTED
        assert ledger.get_service("svc").available_slots == 0

    def test_manually_inactive_service_refuses(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 3)
        ledger.deactivate("svc")
        assert ledger.reserve("svc") is ReserveOutcome.INACTIVE
        assert ledger.get_service("svc").available_slots == 3

    def test_release_restores_and_reactivates(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 1)
        ledger.reserve("svc")
        svc = ledger.release("svc")
        assert svc.available_slots == 1
        assert svc.is_active
        assert not svc.auto_deactivated

    def test_release_never_exceeds_max(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 2)
        ledger.release("svc")
        assert ledger.get_service("svc").available_slots == 2

    def test_release_keeps_manual_deactivation(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 2)
        ledger.reserve("svc")
        ledger.deactivate("svc")
        svc = ledger.release("svc")
        assert svc.available_slots == 2
        assert not svc.is_active

    def test_outcome_maps_to_conflict_reason(self):
        assert ReserveOutcome.EXHAUSTED.as_conflict("svc").reason == ConflictError.CAPACITY_EXHAUSTED
        assert ReserveOutcome.INACTIVE.as_conflict("svc").reason == ConflictError.SERVICE_INACTIVE


class TestTransfer:
    def test_same_service_is_free(self):
        ledger = make_ledger()
        ledger.register_service("a", "A", "X", 1)
        ledger.reserve("a")
        assert ledger.transfer("a", "a") is ReserveOutcome.RESERVED
        assert ledger.get_service("a").available_slots == 0

    def test_moves_one_unit(self):
        ledger = make_ledger()
        ledger.register_service("a", "A", "X", 2)
        ledger.register_service("b", "B", "X", 2)
        ledger.reserve("a")
        assert ledger.transfer("a", "b") is ReserveOutcome.RESERVED
        assert ledger.get_service("a").available_slots == 2
        assert ledger.get_service("b").available_slots == 1

    def test_refused_transfer_changes_nothing(self):
        ledger = make_ledger()
        ledger.register_service("a", "A", "X", 2)
        ledger.register_service("b", "B", "X", 1)
        ledger.reserve("a")
        ledger.reserve("b")
        assert ledger.transfer("a", "b") is ReserveOutcome.EXHAUSTED
        assert ledger.get_service("a").available_slots == 1
        assert ledger.get_service("b").available_slots == 0


class TestActivation:
    def test_activate_refills(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 2)
        ledger.reserve("svc")
        ledger.deactivate("svc")
        svc = ledger.activate("svc")
        assert svc.is_active
        assert svc.available_slots == 2

    def test_deactivate_clears_auto_flag(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 1)
        ledger.reserve("svc")
        svc = ledger.deactivate("svc")
        assert not svc.auto_deactivated


class TestUpdateService:
    def test_details_change_without_touching_capacity(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 3)
        ledger.reserve("svc")
        svc = ledger.update_service("svc", name="Brake Job", description="Pads and discs")
        assert svc.name == "Brake Job"
        assert svc.category == "Repair"
        assert svc.description == "Pads and discs"
        assert (svc.available_slots, svc.max_daily_slots) == (2, 3)

    def test_raising_maximum_keeps_todays_usage(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 3)
        ledger.reserve("svc")
        svc = ledger.update_service("svc", max_daily_slots=6)
        assert (svc.available_slots, svc.max_daily_slots) == (5, 6)

    def test_lowering_maximum_clamps_remaining(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 8)
        ledger.reserve("svc")
        svc = ledger.update_service("svc", max_daily_slots=4)
        assert (svc.available_slots, svc.max_daily_slots) == (3, 4)
        assert svc.is_active

    def test_lowering_below_usage_auto_deactivates(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 5)
        for _ in range(3):
            ledger.reserve("svc")
        svc = ledger.update_service("svc", max_daily_slots=2)
        assert svc.available_slots == 0
        assert not svc.is_active
        assert svc.auto_deactivated
        assert ledger.reserve("svc") is ReserveOutcome.EXHAUSTED

    def test_raising_maximum_reopens_exhausted_service(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 1)
        ledger.reserve("svc")
        svc = ledger.update_service("svc", max_daily_slots=3)
        assert svc.available_slots == 2
        assert svc.is_active
        assert ledger.reserve("svc") is ReserveOutcome.RESERVED

    def test_manual_deactivation_survives_capacity_change(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 2)
        ledger.deactivate("svc")
        svc = ledger.update_service("svc", max_daily_slots=4)
        assert not svc.is_active
        assert svc.available_slots == 4

    def test_zero_maximum_rejected_and_row_unchanged(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 3)
        with pytest.raises(ValidationError):
            ledger.update_service("svc", max_daily_slots=0)
        assert ledger.get_service("svc").max_daily_slots == 3

    def test_unknown_service(self):
        with pytest.raises(NotFoundError):
            make_ledger().update_service("missing", max_daily_slots=2)

    def test_bounds_hold_across_capacity_edits(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 4)
        for new_max in (6, 1, 3, 2, 5):
            ledger.reserve("svc")
            svc = ledger.update_service("svc", max_daily_slots=new_max)
            assert 0 <= svc.available_slots <= svc.max_daily_slots
            assert svc.is_active == (svc.available_slots > 0)


class TestResetAll:
    def test_refills_and_reactivates_exhausted(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 1)
        ledger.reserve("svc")
        assert ledger.reset_all() == 1
        svc = ledger.get_service("svc")
        assert svc.available_slots == 1
        assert svc.is_active

    def test_manual_deactivation_survives(self):
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", 2)
        ledger.deactivate("svc")
        ledger.reset_all()
        svc = ledger.get_service("svc")
        assert not svc.is_active
        assert svc.available_slots == 2

    def test_manual_deactivation_reversed_when_configured(self):
        ledger = make_ledger(CapacityConfig(reactivate_manual_on_reset=True))
        ledger.register_service("svc", "Service", "Repair", 2)
        ledger.deactivate("svc")
        ledger.reset_all()
        assert ledger.get_service("svc").is_active

    def test_counts_every_service(self, ledger):
        assert ledger.reset_all() == len(ledger.list_services())


class TestBookedSlots:
    def test_cancelled_does_not_occupy(self):
        ledger = make_ledger()
        day = future_date()
        add_appointment(ledger, day, "09:00-10:00", AppointmentStatus.CANCELLED)
        add_appointment(ledger, day, "10:00-11:00", AppointmentStatus.CONFIRMED)
        assert ledger.booked_slots(day) == {"10:00-11:00"}

    def test_completed_occupies_by_default(self):
        ledger = make_ledger()
        day = future_date()
        add_appointment(ledger, day, "09:00-10:00", AppointmentStatus.COMPLETED)
        assert ledger.booked_slots(day) == {"09:00-10:00"}

    def test_completed_excluded_when_configured(self):
        ledger = make_ledger(booking_config=BookingConfig(exclude_completed_from_booked_slots=True))
        day = future_date()
        add_appointment(ledger, day, "09:00-10:00", AppointmentStatus.COMPLETED)
        assert ledger.booked_slots(day) == set()

    def test_other_dates_ignored(self):
        ledger = make_ledger()
        add_appointment(ledger, future_date(3), "09:00-10:00")
        assert ledger.booked_slots(future_date(4)) == set()

    def test_exclude_appointment_id(self):
        ledger = make_ledger()
        day = future_date()
        appt = add_appointment(ledger, day, "09:00-10:00")
        assert ledger.booked_slots(day, exclude_appointment_id=appt.id) == set()

    def test_available_slots_in_configured_order(self):
        ledger = make_ledger(slots=("08:00-09:00", "09:00-10:00", "10:00-11:00"))
        day = future_date()
        add_appointment(ledger, day, "09:00-10:00")
        assert ledger.available_slots(day) == ["08:00-09:00", "10:00-11:00"]


class TestConcurrency:
    def test_reservation_storm_never_oversells(self):
        capacity, attempts = 5, 40
        ledger = make_ledger()
        ledger.register_service("svc", "Service", "Repair", capacity)
        outcomes = []
        outcomes_lock = threading.Lock()
        start = threading.Barrier(attempts)

        def worker():
            start.wait()
            outcome = ledger.reserve("svc")
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(ReserveOutcome.RESERVED) == capacity
        assert outcomes.count(ReserveOutcome.EXHAUSTED) == attempts - capacity
        svc = ledger.get_service("svc")
        assert svc.available_slots == 0
        assert not svc.is_active

    def test_mixed_reserve_release_keeps_bounds(self):
        ledger = make_ledger(replace(CapacityConfig(), default_max_daily_slots=3))
        ledger.register_service("svc", "Service", "Repair")
        errors = []

        def churn():
            for _ in range(50):
                if ledger.reserve("svc") is ReserveOutcome.RESERVED:
                    ledger.release("svc")
                svc = ledger.get_service("svc")
                if not 0 <= svc.available_slots <= svc.max_daily_slots:
                    errors.append(svc.available_slots)

        threads = [threading.Thread(target=churn) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert ledger.get_service("svc").available_slots == 3
