"""Worker: rewind a provider's watermark to its last recorded transaction.

Usage:
    python -m worker.reset_watermark --provider weatherapi.grid-beta.hypr
    python -m worker.reset_watermark --provider 0x1234...abcd
"""

import argparse
import sys

import structlog
from sqlalchemy import or_, select

from config import Settings, get_settings
from db.connection import session_scope
from db.models import ProviderLeaderboard
from paytracker.services.schemas.registry import Provider
from paytracker.services.watermark import WatermarkStore
from worker._bootstrap import payments_db, setup_logging

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Reset a provider watermark to its last transaction block",
    )
    parser.add_argument(
        "--provider", "-p", required=True, help="Provider namehash or full registry name"
    )
    args: argparse.Namespace = parser.parse_args(argv)

    settings: Settings = get_settings()
    setup_logging(settings)

    with payments_db(settings) as factory, session_scope(factory) as session:
        row = session.scalar(
            select(ProviderLeaderboard).where(
                or_(
                    ProviderLeaderboard.provider_entry_namehash == args.provider,
                    ProviderLeaderboard.provider_entry_name == args.provider,
                )
            )
        )
        if row is None:
            logger.error("Unknown provider", provider=args.provider)
            sys.exit(1)

        provider = Provider(
            namehash=row.provider_entry_namehash,
            display_name=row.provider_entry_name,
            provider_id=row.provider_id,
            wallet_address=row.wallet_address,
        )
        block = WatermarkStore(session).reset_to_last_transaction(provider)

    logger.info("Watermark reset complete", provider=provider.display_name, block=block)


if __name__ == "__main__":
    main()
