"""
Offline console demo: drives the appointment core from the terminal.

Uses the real ledger, state machine, adjudicator and notification fan-out
over in-memory storage. No database, no HTTP, no network calls. Live
pushes are shown as they arrive on the subscribed channels.

Usage:
    python console_demo.py
    python console_demo.py --scenario booking
    python console_demo.py --scenario capacity
    python console_demo.py --scenario change
"""

import argparse
import shlex
from datetime import date, timedelta
from typing import Optional

from asms.config import settings
from asms.core.lifecycle import ServiceDesk, build_service_desk
from asms.errors import ASMSError
from asms.jobs.scheduler import run_capacity_sweep
from asms.schemas.user_schema import Role
from asms.tools.push import ADMIN_BROADCAST, user_channel

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

HELP = """Commands:
  book <service> <YYYY-MM-DD> <slot> [plate]   book as the demo customer
  approve <id> | reject <id>                   admin decisions
  assign <id>                                  assign the demo employee
  status <id> <STATUS>                         employee status update
  cancel <id>                                  customer cancellation
  request <id> <reason...>                     customer change request
  grant <request_id> | deny <request_id>       admin adjudication
  move <id> <YYYY-MM-DD> <slot>                apply an approved edit
  slots <YYYY-MM-DD>                           free slots for a date
  services                                     capacity per service
  inbox <customer|employee|admin>              list notifications
  sweep                                        run the daily capacity reset
  quit"""


class ConsoleSession:
    """Scripted or interactive walkthrough of one ServiceDesk."""

    def __init__(self, desk: Optional[ServiceDesk] = None) -> None:
        self.desk = desk or build_service_desk(settings).bootstrap()
        directory = self.desk.directory
        self.admin = directory.list_admins()[0]
        self.customer = directory.add_user("demo.customer", Role.CUSTOMER, "Dana Customer")
        self.employee = directory.add_user("demo.mechanic", Role.EMPLOYEE, "Sam Mechanic")
        self._feeds = {
            "customer": self.desk.channel.subscribe(user_channel(self.customer.id)),
            "employee": self.desk.channel.subscribe(user_channel(self.employee.id)),
            "admins": self.desk.channel.subscribe(ADMIN_BROADCAST),
        }

    def say(self, text: str) -> None:
        print(f"{GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def show_pushes(self) -> None:
        for name, feed in self._feeds.items():
            for payload in feed.drain():
                print(f"{YELLOW}  [push:{name}] {payload['title']}: {payload['message']}{RESET}")

    # Pre-scripted scenarios for --scenario flag
    @staticmethod
    def _scenarios() -> dict[str, list[str]]:
        day = (date.today() + timedelta(days=1)).isoformat()
        later = (date.today() + timedelta(days=2)).isoformat()
        return {
            "booking": [
                f"book oil-change {day} 09:00-10:00 WP-CAB-1234",
                f"slots {day}",
                "approve 1",
                "assign 1",
                "status 1 READY",
                "status 1 READY",
                "status 1 COMPLETED",
                "cancel 1",
                "inbox customer",
            ],
            "capacity": [
                f"book brake-repair {day} 08:00-09:00",
                f"book brake-repair {day} 09:00-10:00",
                f"book brake-repair {day} 10:00-11:00",
                f"book brake-repair {day} 11:00-12:00",
                "services",
                "sweep",
                f"book brake-repair {day} 11:00-12:00",
            ],
            "change": [
                f"book full-service {day} 13:00-14:00",
                "request 1 need a later time",
                "request 1 need a later time",
                "deny 1",
                "request 1 need a later date please",
                "grant 2",
                f"move 1 {later} 15:00-16:00",
                "inbox admin",
            ],
        }

    def execute(self, line: str) -> str:
        """Run one command and return its printable result. Core errors are reported, not raised."""
        parts = shlex.split(line)
        if not parts:
            return ""
        command, args = parts[0].lower(), parts[1:]
        desk = self.desk
        try:
            if command == "book":
                appt = desk.appointments.create({
                    "vehicle": {
                        "vehicle_type": "Car",
                        "brand": "Toyota",
                        "model": "Corolla",
                        "plate": args[3] if len(args) > 3 else "DEMO-001",
                    },
                    "service_id": args[0],
                    "appointment_date": args[1],
                    "time_slot": args[2],
                }, self.customer.id)
                return f"Booked appointment {appt.id}: {appt.service_type} {appt.time_slot} [{appt.status.value}]"
            if command == "approve":
                return f"Appointment {desk.appointments.approve(int(args[0])).id} confirmed"
            if command == "reject":
                return f"Appointment {desk.appointments.reject(int(args[0])).id} rejected"
            if command == "assign":
                appt = desk.appointments.assign_employee(int(args[0]), self.employee.id)
                return f"Appointment {appt.id} -> {appt.status.value} ({self.employee.display_name})"
            if command == "status":
                appt = desk.appointments.set_status(
                    int(args[0]), args[1], Role.EMPLOYEE, self.employee.id
                )
                return f"Appointment {appt.id} is {appt.status.value}"
            if command == "cancel":
                desk.appointments.cancel(int(args[0]), self.customer.id)
                return f"Appointment {args[0]} cancelled"
            if command == "request":
                req = desk.change_requests.submit(int(args[0]), " ".join(args[1:]), self.customer.id)
                return f"Change request {req.id} submitted [{req.status.value}]"
            if command in ("grant", "deny"):
                resolve = desk.change_requests.approve if command == "grant" else desk.change_requests.reject
                req = resolve(int(args[0]), "Handled from console")
                return f"Change request {req.id} {req.status.value}"
            if command == "move":
                appt = desk.change_requests.apply_edit(
                    int(args[0]),
                    {"appointment_date": args[1], "time_slot": args[2]},
                    self.customer.id,
                )
                return f"Appointment {appt.id} moved to {appt.appointment_date} {appt.time_slot}"
            if command == "slots":
                free = desk.ledger.available_slots(date.fromisoformat(args[0]))
                return f"Free on {args[0]}: {', '.join(free) or 'none'}"
            if command == "services":
                return "\n".join(
                    f"{s.id}: {s.available_slots}/{s.max_daily_slots} "
                    f"{'active' if s.is_active else 'inactive'}"
                    for s in desk.ledger.list_services()
                )
            if command == "inbox":
                who = {"customer": self.customer, "employee": self.employee, "admin": self.admin}[args[0]]
                rows = desk.notifications.list(who.id)
                unread = desk.notifications.unread_count(who.id)
                lines = [f"{who.display_name}: {len(rows)} notifications, {unread} unread"]
                lines += [f"  - {n.title}: {n.message}" for n in rows]
                return "\n".join(lines)
            if command == "sweep":
                return f"Capacity reset for {run_capacity_sweep(desk.ledger)} services"
            if command == "help":
                return HELP
        except ASMSError as exc:
            return f"{exc.kind}: {exc.message}"
        except (IndexError, KeyError, ValueError):
            return f"Bad arguments for '{command}'. Type 'help'."
        return f"Unknown command '{command}'. Type 'help'."

    def _step(self, line: str) -> None:
        print(f"\n{BLUE}> {RESET}{line}")
        result = self.execute(line)
        if result.split(":", 1)[0] in ("not_found", "forbidden", "invalid_state", "conflict", "validation_error"):
            print(f"{RED}{result}{RESET}")
        else:
            self.say(result)
        self.system_log(
            f"{len(self.desk.notifications_repo.ids())} notifications stored, "
            f"{len(self.desk.appointments.list_all())} appointments"
        )
        self.show_pushes()

    def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self._scenarios().get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  APPOINTMENT CORE - Scenario: {scenario}{RESET}")
        print(f"{BOLD}  Business: {settings.business.name}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

        for step in steps:
            self._step(step)

        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  Scenario '{scenario}' complete.{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    def run(self) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  APPOINTMENT CORE - Console Demo{RESET}")
        print(f"{BOLD}  Business: {settings.business.name}{RESET}")
        print(f"{BOLD}  Type 'help' for commands, 'quit' to exit{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

        while True:
            line = input(f"\n{BLUE}> {RESET}").strip()
            if not line:
                continue
            if line.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                break
            result = self.execute(line)
            print(result)
            self.show_pushes()


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=["booking", "capacity", "change"],
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    args = parser.parse_args()

    session = ConsoleSession()
    if args.scenario:
        session.run_scenario(args.scenario)
    else:
        session.run()


if __name__ == "__main__":
    main()
