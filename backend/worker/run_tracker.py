"""Worker: reconcile provider payments against the chain.

Usage:
    python -m worker.run_tracker
    python -m worker.run_tracker --daemon
    python -m worker.run_tracker --daemon --poll-interval 300
"""

import argparse
import sys

import structlog

from config import Settings, get_settings
from db.enums import RunStatus
from paytracker.services.explorer_client import ExplorerClient
from paytracker.services.orchestrator import PaymentTracker
from paytracker.services.registry import IdentityRegistry
from paytracker.services.schemas.results import RunSummary
from worker._bootstrap import payments_db, registry_db, setup_logging

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Reconcile USDC payments to registered providers",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        default=False,
        help="Keep running, one cycle every poll interval",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between daemon cycles (default: TRACKER_POLL_INTERVAL)",
    )
    args: argparse.Namespace = parser.parse_args(argv)

    settings: Settings = get_settings()
    setup_logging(settings)

    if not settings.explorer.api_key:
        logger.error("ETHERSCAN_API_KEY is not set")
        sys.exit(1)

    try:
        with payments_db(settings) as payments, registry_db(settings) as registry_factory:
            registry = IdentityRegistry(
                registry_factory,
                wallet_note_label=settings.registry.wallet_note_label,
                provider_note_label=settings.registry.provider_note_label,
            )
            with ExplorerClient(settings.explorer) as explorer:
                tracker = PaymentTracker(settings, payments, registry, explorer)

                if args.daemon:
                    logger.info(
                        "Starting tracker daemon",
                        poll_interval=args.poll_interval or settings.tracker.poll_interval,
                    )
                    try:
                        tracker.run_forever(args.poll_interval)
                    except KeyboardInterrupt:
                        logger.info("Tracker daemon stopped")
                    return

                summary: RunSummary = tracker.run_once()
    except Exception:
        logger.exception("Tracker run failed")
        sys.exit(1)

    if summary.errors:
        for err in summary.errors[:10]:
            logger.error("provider_error", detail=err)
        if len(summary.errors) > 10:
            logger.warning("truncated_errors", remaining=len(summary.errors) - 10)

    if summary.status == RunStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
