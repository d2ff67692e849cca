"""CLI entry point: run the rule service or check a single booking."""

from __future__ import annotations

import argparse
import sys

from .config import load_settings
from .server import build_service, configure_logging, main as serve


def _check(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.log_file)
    service = build_service(settings)

    candidate = {"msdyn_workorder": args.work_order, "starttime": args.start}
    if args.booking_id:
        candidate["bookableresourcebookingid"] = args.booking_id

    outcome = service.validate_booking(candidate)
    if outcome.accepted:
        print(f"OK: no other booking on work order {args.work_order} that day")
        return 0

    print(f"REJECTED: {outcome.reason}")
    for b in outcome.conflicts:
        print(f"  - {b.booking_id or '(no id)'} starts {b.start_time.isoformat()}")
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="resource_booking_rules")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP/MCP rule service")

    check = sub.add_parser("check", help="Check one booking against the same-day rule")
    check.add_argument("--work-order", required=True, help="Work order GUID")
    check.add_argument("--start", required=True, help="Booking start time (ISO-8601, UTC if no offset)")
    check.add_argument("--booking-id", help="Existing booking GUID when checking a move")

    args = parser.parse_args(argv)

    try:
        if args.command == "serve":
            serve()
            return 0
        return _check(args)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
