"""
Process entry point for the appointment core.

Hosts one ServiceDesk with its daily capacity sweep running on a
background scheduler, and drives it from the offline console demo.

Usage:
    Console mode:     python main.py console
    Scripted demo:    python main.py console --scenario booking
    Without sweep:    python main.py console --no-scheduler
"""

import argparse
import logging
from typing import Optional

from asms.config import settings

logger = logging.getLogger(__name__)


def _run_console_mode(scenario: Optional[str], with_scheduler: bool) -> None:
    """Start the offline console demo on a desk that owns the daily sweep."""
    from console_demo import ConsoleSession

    session = ConsoleSession()
    if with_scheduler:
        session.desk.start_scheduler()
    try:
        if scenario:
            session.run_scenario(scenario)
        else:
            session.run()
    except (KeyboardInterrupt, EOFError):
        logger.info("Console stopped")
    finally:
        session.desk.shutdown(wait=False)


def main() -> None:
    parser = argparse.ArgumentParser(description=f"{settings.app_name} process runner")
    sub = parser.add_subparsers(dest="mode", required=True)

    console = sub.add_parser("console", help="Run the offline console demo")
    console.add_argument("--scenario", choices=["booking", "capacity", "change"], default=None)
    console.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not start the daily capacity sweep for this session",
    )

    args = parser.parse_args()
    _run_console_mode(args.scenario, not args.no_scheduler)


if __name__ == "__main__":
    main()
