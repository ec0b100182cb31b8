"""Worker: report watermark health and check leaderboard stats.

Usage:
    python -m worker.diagnose
    python -m worker.diagnose --safe-height 31522845
    python -m worker.diagnose --verify
    python -m worker.diagnose --recompute [--provider NAMEHASH]
"""

import argparse
import sys

import structlog

from config import Settings, get_settings
from db.connection import session_scope
from db.enums import ProviderHealth
from paytracker.services.diagnostics import LeaderboardAuditor
from worker._bootstrap import payments_db, setup_logging

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Leaderboard diagnostics",
    )
    parser.add_argument(
        "--safe-height",
        type=int,
        default=None,
        help="Flag watermarks above this block as too far ahead",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        default=False,
        help="Compare stored stats with stats recomputed from transactions",
    )
    parser.add_argument(
        "--recompute",
        action="store_true",
        default=False,
        help="Rewrite stats from recorded transactions",
    )
    parser.add_argument("--provider", default=None, help="Limit --recompute to one namehash")
    args: argparse.Namespace = parser.parse_args(argv)

    settings: Settings = get_settings()
    setup_logging(settings)

    unhealthy = 0
    drifted = 0
    with payments_db(settings) as factory, session_scope(factory) as session:
        auditor = LeaderboardAuditor(session, safe_height=args.safe_height)

        if args.recompute:
            rewritten = auditor.recompute_stats(args.provider)
            logger.info("Stats recomputed", providers=rewritten)

        for status in auditor.provider_statuses():
            log = logger.warning if status.health != ProviderHealth.OK else logger.info
            log(
                "provider_status",
                provider=status.name,
                wallet=status.wallet_address,
                last_processed_block=status.last_processed_block,
                last_transaction_block=status.last_transaction_block,
                transactions=status.transaction_count,
                total_received=str(status.total_received),
                unique_senders=status.unique_sender_count,
                health=status.health.value,
            )
            if status.health in (ProviderHealth.CORRUPTED, ProviderHealth.TOO_FAR_AHEAD):
                unhealthy += 1

        if args.verify:
            for drift in auditor.verify_stats():
                drifted += 1
                logger.error(
                    "stats_drift",
                    provider=drift.name,
                    stored={k: str(v) for k, v in drift.stored.items()},
                    expected={k: str(v) for k, v in drift.expected.items()},
                )

    if unhealthy or drifted:
        logger.warning("Diagnostics found problems", unhealthy=unhealthy, drifted=drifted)
        sys.exit(1)
    logger.info("Diagnostics clean")


if __name__ == "__main__":
    main()
