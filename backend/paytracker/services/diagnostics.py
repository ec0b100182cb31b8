"""Operator diagnostics over the leaderboard: health, recompute, verify."""

from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from db.enums import ProviderHealth
from db.models import ProviderLeaderboard
from paytracker.services._helpers import now_iso
from paytracker.services.ledger import wallet_stats
from paytracker.services.schemas.results import ProviderStatus, StatsDrift
from paytracker.services.watermark import coerce_block, in_sane_range

logger = structlog.get_logger(__name__)

STAT_FIELDS = (
    "total_received",
    "transaction_count",
    "unique_sender_count",
    "first_transaction_at",
    "last_transaction_at",
)


def classify(
    watermark: Optional[int], last_transaction_block: int, safe_height: Optional[int] = None
) -> ProviderHealth:
    if watermark is None or not in_sane_range(watermark):
        return ProviderHealth.CORRUPTED
    if watermark == 0:
        return ProviderHealth.NOT_STARTED
    if watermark < last_transaction_block:
        return ProviderHealth.BEHIND
    if safe_height is not None and watermark > safe_height:
        return ProviderHealth.TOO_FAR_AHEAD
    return ProviderHealth.OK


class LeaderboardAuditor:
    """Read-mostly checks an operator runs against the payments ledger.

    ``recompute_stats`` is the only writer; it flushes but leaves the commit
    to the caller.
    """

    def __init__(self, session: Session, safe_height: Optional[int] = None) -> None:
        self.session = session
        self.safe_height = safe_height

    def _rows(self, namehash: Optional[str] = None) -> list[ProviderLeaderboard]:
        stmt = select(ProviderLeaderboard).order_by(ProviderLeaderboard.provider_entry_name)
        if namehash is not None:
            stmt = stmt.where(ProviderLeaderboard.provider_entry_namehash == namehash)
        return list(self.session.scalars(stmt).all())

    def _expected(self, wallet: str) -> dict[str, object]:
        return wallet_stats(self.session, wallet)

    def provider_statuses(self) -> list[ProviderStatus]:
        statuses = []
        for row in self._rows():
            watermark = coerce_block(row.last_processed_block)
            last_tx_block = coerce_block(row.last_transaction_block) or 0
            statuses.append(
                ProviderStatus(
                    namehash=row.provider_entry_namehash,
                    name=row.provider_entry_name,
                    wallet_address=row.wallet_address,
                    last_processed_block=watermark,
                    last_transaction_block=last_tx_block,
                    transaction_count=row.transaction_count,
                    total_received=Decimal(str(row.total_received or 0)),
                    unique_sender_count=row.unique_sender_count,
                    health=classify(watermark, last_tx_block, self.safe_height),
                )
            )
        return statuses

    def recompute_stats(self, namehash: Optional[str] = None) -> int:
        """Rebuild aggregates from recorded transactions. Returns rows rewritten."""
        rows = self._rows(namehash)
        for row in rows:
            expected = self._expected(row.wallet_address)
            for name, value in expected.items():
                setattr(row, name, value)
            row.updated_at = now_iso()
            logger.info(
                "Recomputed provider stats",
                provider=row.provider_entry_name,
                transaction_count=expected["transaction_count"],
                total_received=str(expected["total_received"]),
            )
        self.session.flush()
        return len(rows)

    def verify_stats(self) -> list[StatsDrift]:
        drifts = []
        for row in self._rows():
            expected = self._expected(row.wallet_address)
            stored = {
                "total_received": Decimal(str(row.total_received or 0)),
                "transaction_count": row.transaction_count,
                "unique_sender_count": row.unique_sender_count,
                "first_transaction_at": row.first_transaction_at,
                "last_transaction_at": row.last_transaction_at,
            }
            expected_stats = {name: expected[name] for name in STAT_FIELDS}
            if stored != expected_stats:
                drifts.append(
                    StatsDrift(
                        namehash=row.provider_entry_namehash,
                        name=row.provider_entry_name,
                        stored=stored,
                        expected=expected_stats,
                    )
                )
        if drifts:
            logger.warning("Leaderboard stats drift detected", providers=len(drifts))
        return drifts
