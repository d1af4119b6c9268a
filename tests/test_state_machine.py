"""Tests for the appointment state machine."""

from datetime import date, timedelta

import pytest

from asms.config import AppConfig, BookingConfig
from asms.core.lifecycle import build_service_desk
from asms.core.state_machine import TRANSITIONS, can_transition, is_terminal, valid_targets
from asms.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from asms.schemas.appointment_schema import AppointmentStatus
from asms.schemas.user_schema import Role
from tests.conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    EMPLOYEE_ID,
    OTHER_CUSTOMER_ID,
    OTHER_EMPLOYEE_ID,
    future_date,
    make_booking,
    make_directory,
)

S = AppointmentStatus


class TestTransitionTable:
    def test_has_eight_edges(self):
        assert len(TRANSITIONS) == 8

    def test_happy_path_edges(self):
        assert can_transition(S.PENDING, S.CONFIRMED)
        assert can_transition(S.CONFIRMED, S.IN_SERVICE)
        assert can_transition(S.IN_SERVICE, S.READY)
        assert can_transition(S.READY, S.COMPLETED)

    def test_no_skipping(self):
        assert not can_transition(S.PENDING, S.IN_SERVICE)
        assert not can_transition(S.CONFIRMED, S.COMPLETED)

    def test_no_going_back(self):
        assert not can_transition(S.READY, S.IN_SERVICE)
        assert not can_transition(S.CONFIRMED, S.PENDING)

    def test_terminal_states(self):
        assert is_terminal(S.COMPLETED)
        assert is_terminal(S.CANCELLED)
        assert not is_terminal(S.READY)

    def test_every_live_state_can_cancel(self):
        for status in (S.PENDING, S.CONFIRMED, S.IN_SERVICE, S.READY):
            assert S.CANCELLED in valid_targets(status)


class TestCreate:
    def test_creates_pending(self, machine):
        appt = machine.create(make_booking(), CUSTOMER_ID)
        assert appt.id == 1
        assert appt.status == S.PENDING
        assert appt.customer_id == CUSTOMER_ID
        assert appt.service_type == "Oil Change"
        assert appt.service_category == "Maintenance"
        assert appt.assigned_employee_id is None

    def test_normalizes_plate_and_slot(self, machine):
        appt = machine.create(
            make_booking(time_slot=" 10:00 - 11:00 ", plate=" wp cab 99 "), CUSTOMER_ID
        )
        assert appt.time_slot == "10:00-11:00"
        assert appt.vehicle.plate == "WPCAB99"

    def test_service_alias_resolves(self, machine):
        appt = machine.create(make_booking(service_id="brakes"), CUSTOMER_ID)
        assert appt.service_id == "brake-repair"

    def test_consumes_capacity(self, machine, ledger):
        machine.create(make_booking(service_id="brake-repair"), CUSTOMER_ID)
        assert ledger.get_service("brake-repair").available_slots == 2

    def test_slot_taken_conflict(self, machine, booked):
        with pytest.raises(ConflictError) as exc:
            machine.create(make_booking(service_id="body-wash"), OTHER_CUSTOMER_ID)
        assert exc.value.reason == ConflictError.SLOT_TAKEN

    def test_slot_conflict_does_not_consume_capacity(self, machine, ledger, booked):
        before = ledger.get_service("body-wash").available_slots
        with pytest.raises(ConflictError):
            machine.create(make_booking(service_id="body-wash"), OTHER_CUSTOMER_ID)
        assert ledger.get_service("body-wash").available_slots == before

    def test_capacity_exhausted_conflict(self, machine, ledger):
        ledger.register_service("solo", "Solo", "Repair", 1)
        machine.create(make_booking(service_id="solo", time_slot="08:00-09:00"), CUSTOMER_ID)
        with pytest.raises(ConflictError) as exc:
            machine.create(make_booking(service_id="solo", time_slot="09:00-10:00"), CUSTOMER_ID)
        assert exc.value.reason == ConflictError.CAPACITY_EXHAUSTED

    def test_inactive_service_conflict(self, machine, ledger):
        ledger.deactivate("oil-change")
        with pytest.raises(ConflictError) as exc:
            machine.create(make_booking(), CUSTOMER_ID)
        assert exc.value.reason == ConflictError.SERVICE_INACTIVE

    def test_unknown_service(self, machine):
        with pytest.raises(NotFoundError):
            machine.create(make_booking(service_id="teleportation"), CUSTOMER_ID)

    @pytest.mark.parametrize("service_id", ["scanner", "brake-pads-premium", "oil change deluxe"])
    def test_partial_service_name_not_booked(self, machine, ledger, service_id):
        with pytest.raises(NotFoundError):
            machine.create(make_booking(service_id=service_id), CUSTOMER_ID)
        assert machine.list_all() == []
        assert all(s.available_slots == s.max_daily_slots for s in ledger.list_services())

    def test_display_name_resolves(self, machine):
        appt = machine.create(make_booking(service_id="Wheel  Alignment"), CUSTOMER_ID)
        assert appt.service_id == "wheel-alignment"

    def test_unknown_customer(self, machine):
        with pytest.raises(NotFoundError):
            machine.create(make_booking(), 999)

    def test_employee_cannot_book(self, machine):
        with pytest.raises(ForbiddenError):
            machine.create(make_booking(), EMPLOYEE_ID)

    def test_unknown_slot_label(self, machine):
        with pytest.raises(ValidationError) as exc:
            machine.create(make_booking(time_slot="12:00-13:00"), CUSTOMER_ID)
        assert exc.value.fields == ["time_slot"]

    def test_past_date_rejected(self, machine):
        yesterday = date.today() - timedelta(days=1)
        with pytest.raises(ValidationError):
            machine.create(make_booking(day=yesterday), CUSTOMER_ID)

    def test_past_date_allowed_when_configured(self):
        config = AppConfig(booking=BookingConfig(allow_past_dates=True))
        desk = build_service_desk(config, directory=make_directory()).bootstrap()
        yesterday = date.today() - timedelta(days=1)
        appt = desk.appointments.create(make_booking(day=yesterday), CUSTOMER_ID)
        assert appt.appointment_date == yesterday

    def test_malformed_request(self, machine):
        booking = make_booking()
        del booking["vehicle"]["plate"]
        with pytest.raises(ValidationError) as exc:
            machine.create(booking, CUSTOMER_ID)
        assert "vehicle.plate" in exc.value.fields

    def test_invalid_year(self, machine):
        booking = make_booking()
        booking["vehicle"]["year"] = 1800
        with pytest.raises(ValidationError):
            machine.create(booking, CUSTOMER_ID)


class TestApproveReject:
    def test_approve_pending(self, machine, booked):
        assert machine.approve(booked.id).status == S.CONFIRMED

    def test_approve_twice_fails(self, machine, booked):
        machine.approve(booked.id)
        with pytest.raises(InvalidStateError, match="Only pending"):
            machine.approve(booked.id)

    def test_approve_unknown(self, machine):
        with pytest.raises(NotFoundError):
            machine.approve(404)

    def test_reject_releases_capacity(self, machine, ledger, booked):
        before = ledger.get_service("oil-change").available_slots
        assert machine.reject(booked.id).status == S.CANCELLED
        assert ledger.get_service("oil-change").available_slots == before + 1

    def test_reject_terminal_fails(self, machine, booked):
        machine.reject(booked.id)
        with pytest.raises(InvalidStateError):
            machine.reject(booked.id)


class TestAssignEmployee:
    def test_assign_moves_to_in_service(self, machine, booked):
        machine.approve(booked.id)
        appt = machine.assign_employee(booked.id, EMPLOYEE_ID)
        assert appt.status == S.IN_SERVICE
        assert appt.assigned_employee_id == EMPLOYEE_ID

    def test_assign_from_pending_allowed_by_default(self, machine, booked):
        assert machine.assign_employee(booked.id, EMPLOYEE_ID).status == S.IN_SERVICE

    def test_assign_requires_confirmed_when_configured(self):
        config = AppConfig(booking=BookingConfig(assign_requires_confirmed=True))
        desk = build_service_desk(config, directory=make_directory()).bootstrap()
        appt = desk.appointments.create(make_booking(), CUSTOMER_ID)
        with pytest.raises(InvalidStateError):
            desk.appointments.assign_employee(appt.id, EMPLOYEE_ID)
        desk.appointments.approve(appt.id)
        assert desk.appointments.assign_employee(appt.id, EMPLOYEE_ID).status == S.IN_SERVICE

    def test_non_employee_rejected(self, machine, booked):
        with pytest.raises(ValidationError):
            machine.assign_employee(booked.id, CUSTOMER_ID)

    def test_terminal_rejected(self, machine, booked):
        machine.reject(booked.id)
        with pytest.raises(InvalidStateError):
            machine.assign_employee(booked.id, EMPLOYEE_ID)

    def test_reassign_while_in_service(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        appt = machine.assign_employee(booked.id, OTHER_EMPLOYEE_ID)
        assert appt.status == S.IN_SERVICE
        assert appt.assigned_employee_id == OTHER_EMPLOYEE_ID

    def test_assign_from_ready_restarts_service(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        machine.set_status(booked.id, S.READY, Role.EMPLOYEE, EMPLOYEE_ID)
        appt = machine.assign_employee(booked.id, OTHER_EMPLOYEE_ID)
        assert appt.status == S.IN_SERVICE


class TestSetStatus:
    def test_employee_walks_to_completed(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        machine.set_status(booked.id, "ready", "EMPLOYEE", EMPLOYEE_ID)
        appt = machine.set_status(booked.id, S.COMPLETED, Role.EMPLOYEE, EMPLOYEE_ID)
        assert appt.status == S.COMPLETED

    def test_illegal_edge_lists_valid_targets(self, machine, booked):
        with pytest.raises(InvalidStateError, match="CONFIRMED"):
            machine.set_status(booked.id, S.COMPLETED, Role.ADMIN)
        assert machine.get_status(booked.id) == S.PENDING

    def test_unknown_status_value(self, machine, booked):
        with pytest.raises(ValidationError):
            machine.set_status(booked.id, "FINISHED", Role.ADMIN)

    def test_unknown_role(self, machine, booked):
        with pytest.raises(ValidationError):
            machine.set_status(booked.id, S.CONFIRMED, "MANAGER")

    def test_customer_forbidden(self, machine, booked):
        with pytest.raises(ForbiddenError):
            machine.set_status(booked.id, S.CANCELLED, Role.CUSTOMER, CUSTOMER_ID)

    def test_other_employee_forbidden(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        with pytest.raises(ForbiddenError):
            machine.set_status(booked.id, S.READY, Role.EMPLOYEE, OTHER_EMPLOYEE_ID)

    def test_employee_update_requires_actor_id(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        with pytest.raises(ValidationError) as exc:
            machine.set_status(booked.id, S.READY, Role.EMPLOYEE)
        assert exc.value.fields == ["actor_id"]
        assert machine.get(booked.id).status == S.IN_SERVICE

    def test_same_status_is_noop(self, machine, booked):
        appt = machine.set_status(booked.id, S.PENDING, Role.ADMIN)
        assert appt.status == S.PENDING
        assert appt.updated_at == booked.updated_at

    def test_in_service_by_employee_self_assigns(self, machine, booked):
        machine.approve(booked.id)
        appt = machine.set_status(booked.id, S.IN_SERVICE, Role.EMPLOYEE, EMPLOYEE_ID)
        assert appt.assigned_employee_id == EMPLOYEE_ID

    def test_in_service_by_admin_needs_assignee(self, machine, booked):
        machine.approve(booked.id)
        with pytest.raises(InvalidStateError, match="Assign an employee"):
            machine.set_status(booked.id, S.IN_SERVICE, Role.ADMIN, ADMIN_ID)

    def test_cancel_via_status_releases(self, machine, ledger, booked):
        before = ledger.get_service("oil-change").available_slots
        machine.set_status(booked.id, S.CANCELLED, Role.ADMIN, ADMIN_ID)
        assert ledger.get_service("oil-change").available_slots == before + 1

    def test_nothing_leaves_terminal(self, machine, booked):
        machine.set_status(booked.id, S.CANCELLED, Role.ADMIN)
        with pytest.raises(InvalidStateError):
            machine.set_status(booked.id, S.CONFIRMED, Role.ADMIN)


class TestCustomerCancel:
    def test_owner_cancels(self, machine, booked):
        machine.cancel(booked.id, CUSTOMER_ID)
        assert machine.get_status(booked.id) == S.CANCELLED

    def test_other_customer_forbidden(self, machine, booked):
        with pytest.raises(ForbiddenError, match="not authorized"):
            machine.cancel(booked.id, OTHER_CUSTOMER_ID)

    def test_already_cancelled(self, machine, booked):
        machine.cancel(booked.id, CUSTOMER_ID)
        with pytest.raises(InvalidStateError, match="already cancelled"):
            machine.cancel(booked.id, CUSTOMER_ID)

    def test_completed_cannot_cancel(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        machine.set_status(booked.id, S.READY, Role.EMPLOYEE, EMPLOYEE_ID)
        machine.set_status(booked.id, S.COMPLETED, Role.EMPLOYEE, EMPLOYEE_ID)
        with pytest.raises(InvalidStateError, match="Completed appointments cannot be cancelled"):
            machine.cancel(booked.id, CUSTOMER_ID)

    def test_cancel_frees_slot(self, machine, ledger, booked):
        machine.cancel(booked.id, CUSTOMER_ID)
        assert "09:00-10:00" not in ledger.booked_slots(booked.appointment_date)
        rebooked = machine.create(make_booking(), OTHER_CUSTOMER_ID)
        assert rebooked.time_slot == "09:00-10:00"


class TestReschedule:
    def test_moves_date_and_slot(self, machine, ledger, booked):
        new_day = future_date(10)
        appt = machine.reschedule(
            booked.id, {"appointment_date": new_day.isoformat(), "time_slot": "14:00-15:00"}
        )
        assert appt.appointment_date == new_day
        assert appt.time_slot == "14:00-15:00"
        assert "09:00-10:00" not in ledger.booked_slots(booked.appointment_date)

    def test_same_slot_is_not_a_self_conflict(self, machine, booked):
        appt = machine.reschedule(booked.id, {
            "appointment_date": booked.appointment_date.isoformat(),
            "time_slot": booked.time_slot,
            "additional_requirements": "Check tyre pressure",
        })
        assert appt.additional_requirements == "Check tyre pressure"

    def test_slot_taken(self, machine, booked):
        other = machine.create(make_booking(time_slot="10:00-11:00"), OTHER_CUSTOMER_ID)
        with pytest.raises(ConflictError):
            machine.reschedule(other.id, {
                "appointment_date": booked.appointment_date.isoformat(),
                "time_slot": "09:00-10:00",
            })

    def test_service_change_moves_capacity(self, machine, ledger, booked):
        oil_before = ledger.get_service("oil-change").available_slots
        wash_before = ledger.get_service("body-wash").available_slots
        appt = machine.reschedule(booked.id, {
            "appointment_date": booked.appointment_date.isoformat(),
            "time_slot": booked.time_slot,
            "service_id": "wash",
        })
        assert appt.service_id == "body-wash"
        assert appt.service_type == "Body Wash"
        assert ledger.get_service("oil-change").available_slots == oil_before + 1
        assert ledger.get_service("body-wash").available_slots == wash_before - 1

    def test_in_service_not_editable(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        with pytest.raises(InvalidStateError, match="Cannot update appointments in IN_SERVICE"):
            machine.reschedule(booked.id, {
                "appointment_date": future_date(9).isoformat(), "time_slot": "08:00-09:00",
            })


class TestQueries:
    def test_list_for_customer_newest_first(self, machine):
        first = machine.create(make_booking(time_slot="08:00-09:00"), CUSTOMER_ID)
        second = machine.create(make_booking(time_slot="09:00-10:00"), CUSTOMER_ID)
        machine.create(make_booking(time_slot="10:00-11:00"), OTHER_CUSTOMER_ID)
        assert [a.id for a in machine.list_for_customer(CUSTOMER_ID)] == [second.id, first.id]

    def test_list_for_employee(self, machine, booked):
        machine.assign_employee(booked.id, EMPLOYEE_ID)
        assert [a.id for a in machine.list_for_employee(EMPLOYEE_ID)] == [booked.id]
        assert machine.list_for_employee(OTHER_EMPLOYEE_ID) == []

    def test_list_all_by_status(self, machine, booked):
        other = machine.create(make_booking(time_slot="10:00-11:00"), OTHER_CUSTOMER_ID)
        machine.approve(other.id)
        assert [a.id for a in machine.list_all("confirmed")] == [other.id]
        assert len(machine.list_all()) == 2

    def test_returned_records_are_copies(self, machine, booked):
        copy = machine.get(booked.id)
        copy.status = S.COMPLETED
        assert machine.get_status(booked.id) == S.PENDING
