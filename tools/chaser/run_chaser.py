#!/usr/bin/env python3
"""Credit control chaser runner.

Command-line tool for running chase batches and operator actions against the
configured database.
"""

import argparse
import json
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from agents.chaser.errors import ChaseError  # noqa: E402
from agents.chaser.service import ChaseService  # noqa: E402
from backend.core.config import settings  # noqa: E402
from backend.core.observability import set_trace_id  # noqa: E402
from backend.core.observability.logging import init_logging  # noqa: E402


def setup_logging(verbose: bool = False) -> None:
    """Setup JSON logging.

    Args:
        verbose: Enable verbose logging
    """
    init_logging()
    set_trace_id()
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def build_service() -> ChaseService:
    return ChaseService.from_settings()


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def handle_run(service: ChaseService, args, logger: logging.Logger) -> int:
    if args.loop:
        scheduler = service.scheduler
        scheduler.install_signal_handlers()
        logger.info(
            "chase_loop_started",
            extra={"poll_interval_s": args.interval or settings.CHASE_POLL_INTERVAL_S},
        )
        return scheduler.run_forever(service_mode=True, poll_interval_s=args.interval)

    _print(service.run_batch().to_dict())
    return 0


def handle_expedite(service: ChaseService, args, logger: logging.Logger) -> int:
    outcome = service.expedite(args.invoice_id)
    _print(outcome.to_dict())
    return 0 if outcome.sent else 2


def handle_pause(service: ChaseService, args, logger: logging.Logger) -> int:
    invoice = service.pause(args.invoice_id, paused=args.command == "pause")
    _print(invoice.to_dict())
    return 0


def handle_status(service: ChaseService, args, logger: logging.Logger) -> int:
    _print(service.status())
    return 0


def _load_snapshots(path: str) -> list:
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    # Provider list responses wrap the invoices in "data"
    if isinstance(data, dict):
        data = data.get("data", [])
    return data


def handle_sync(service: ChaseService, args, logger: logging.Logger) -> int:
    result = service.sync_billing(_load_snapshots(args.file))
    _print(result.to_dict())
    return 1 if result.errors else 0


HANDLERS = {
    "run": handle_run,
    "expedite": handle_expedite,
    "pause": handle_pause,
    "resume": handle_pause,
    "status": handle_status,
    "sync": handle_sync,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Credit Control Chaser",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run one batch now
  python tools/chaser/run_chaser.py run

  # Keep running every CHASE_POLL_INTERVAL_S seconds
  python tools/chaser/run_chaser.py run --loop

  # Chase one invoice now, ignoring pause and interval
  python tools/chaser/run_chaser.py expedite 42

  # Apply a provider invoice export before the next batch
  python tools/chaser/run_chaser.py sync invoices.json
        """,
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Evaluate all overdue invoices")
    run.add_argument("--loop", action="store_true", help="Run continuously")
    run.add_argument(
        "--interval", type=float, help="Seconds between batches in --loop mode"
    )

    for name, help_text in (
        ("expedite", "Chase one invoice now"),
        ("pause", "Pause chasing for one invoice"),
        ("resume", "Resume chasing for one invoice"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("invoice_id", type=int)

    sub.add_parser("status", help="Show configuration and candidate counts")

    sync = sub.add_parser("sync", help="Apply provider invoice snapshots from a JSON file")
    sync.add_argument("file", help="JSON list of provider invoices, or - for stdin")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger("tools.chaser.run_chaser")

    service = build_service()
    try:
        return HANDLERS[args.command](service, args, logger)
    except ChaseError as e:
        logger.error("chaser_command_failed", extra={"command": args.command, "error": str(e)})
        _print({"success": False, "error": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
