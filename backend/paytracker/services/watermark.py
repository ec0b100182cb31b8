"""Per-provider reconciliation watermark: validation, repair and audit trail."""

from decimal import Decimal
from typing import Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.enums import ADVANCE_TYPES, BlockChangeType
from db.models import (
    CHAIN_SANITY_CEILING,
    BlockProcessingLog,
    ProviderLeaderboard,
    ProviderTransactions,
)
from paytracker.services._helpers import now_iso
from paytracker.services.errors import WatermarkOutOfRangeError, WatermarkRegressionError
from paytracker.services.schemas.registry import Provider
from paytracker.services.schemas.results import Watermark

logger = structlog.get_logger(__name__)


def coerce_block(value: object) -> Optional[int]:
    """Parse a stored block number. Returns None for anything not integral."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (Decimal, float)):
        return int(value) if value == int(value) else None
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


def in_sane_range(block: int) -> bool:
    return 0 <= block < CHAIN_SANITY_CEILING


def ensure_leaderboard_row(
    session: Session, provider: Provider, lock: bool = False
) -> ProviderLeaderboard:
    """Fetch the provider's leaderboard row, creating an empty one if absent.

    Identity columns are refreshed from ``provider``; stats and watermark are
    never touched here.
    """
    stmt = select(ProviderLeaderboard).where(
        ProviderLeaderboard.provider_entry_namehash == provider.namehash
    )
    if lock:
        stmt = stmt.with_for_update()
    row = session.scalar(stmt)
    ts = now_iso()
    if row is None:
        row = ProviderLeaderboard(
            provider_entry_namehash=provider.namehash,
            provider_entry_name=provider.display_name,
            provider_id=provider.provider_id,
            wallet_address=provider.wallet_address,
            total_received=Decimal(0),
            transaction_count=0,
            unique_sender_count=0,
            last_processed_block=0,
            last_transaction_block=0,
            created_at=ts,
            updated_at=ts,
        )
        session.add(row)
        session.flush()
        return row

    if (
        row.provider_entry_name != provider.display_name
        or row.provider_id != provider.provider_id
        or row.wallet_address != provider.wallet_address
    ):
        row.provider_entry_name = provider.display_name
        row.provider_id = provider.provider_id
        row.wallet_address = provider.wallet_address
        row.updated_at = ts
        session.flush()
    return row


class WatermarkStore:
    """Reads and writes ``provider_leaderboard.last_processed_block``.

    Every change is appended to ``block_processing_log``. The store never
    commits; the caller's session scope decides the unit of work.
    """

    def __init__(self, session: Session):
        self.session = session

    def _row(self, provider: Provider) -> Optional[ProviderLeaderboard]:
        return self.session.scalar(
            select(ProviderLeaderboard).where(
                ProviderLeaderboard.provider_entry_namehash == provider.namehash
            )
        )

    def _audit(
        self,
        provider: Provider,
        old_block: Optional[int],
        new_block: int,
        change_type: BlockChangeType,
    ) -> None:
        self.session.add(
            BlockProcessingLog(
                provider_entry_namehash=provider.namehash,
                provider_entry_name=provider.display_name,
                old_block_number=old_block,
                new_block_number=new_block,
                change_type=change_type.value,
                created_at=now_iso(),
            )
        )

    def get(self, provider: Provider) -> Watermark:
        row = self._row(provider)
        if row is None:
            return Watermark()
        return Watermark(
            last_processed_block=coerce_block(row.last_processed_block),
            last_transaction_block=coerce_block(row.last_transaction_block) or 0,
        )

    def set(self, provider: Provider, new_block: int, reason: BlockChangeType) -> None:
        if isinstance(new_block, bool) or not isinstance(new_block, int):
            raise WatermarkOutOfRangeError(f"Block number must be an integer, got {new_block!r}")
        if not in_sane_range(new_block):
            raise WatermarkOutOfRangeError(
                f"Refusing to set unreasonable block number {new_block} for {provider.display_name}"
            )

        row = ensure_leaderboard_row(self.session, provider, lock=True)
        current = coerce_block(row.last_processed_block)
        if reason in ADVANCE_TYPES and current is not None and new_block < current:
            raise WatermarkRegressionError(
                f"{reason.value} would move {provider.display_name} back from {current} to {new_block}"
            )

        if new_block != current or reason not in ADVANCE_TYPES:
            self._audit(provider, current, new_block, reason)
        row.last_processed_block = new_block
        row.updated_at = now_iso()
        self.session.flush()

    def last_transaction_block(self, provider: Provider) -> Optional[int]:
        """Highest block bearing a recorded transaction to the provider's wallet."""
        stmt = select(func.max(ProviderTransactions.block_number)).where(
            ProviderTransactions.to_address == provider.wallet_address
        )
        return coerce_block(self.session.scalar(stmt))

    def validate_and_repair(self, provider: Provider, observed_height: int, tolerance: int = 1000) -> int:
        """Return a trustworthy watermark, repairing the stored one if needed.

        Repair order: undo a trailing-digit concatenation (``// 10``) when the
        value is beyond the sanity ceiling, else fall back to the last block
        bearing a recorded transaction, else 0.
        """
        row = self._row(provider)
        raw = row.last_processed_block if row is not None else 0
        stored = coerce_block(raw)
        limit = observed_height + tolerance

        if stored is not None and in_sane_range(stored) and stored <= limit:
            return stored

        logger.warning(
            "Watermark corruption detected",
            provider=provider.display_name,
            stored=raw,
            observed_height=observed_height,
            tolerance=tolerance,
        )

        repaired: Optional[int] = None
        reason = BlockChangeType.RESET
        if stored is not None and stored >= CHAIN_SANITY_CEILING:
            candidate = stored // 10
            if in_sane_range(candidate) and candidate <= limit:
                repaired, reason = candidate, BlockChangeType.CORRUPTION_FIX

        if repaired is None:
            last_tx = self.last_transaction_block(provider)
            if last_tx is not None and in_sane_range(last_tx) and last_tx <= limit:
                repaired, reason = last_tx, BlockChangeType.LAST_TRANSACTION_FALLBACK
            else:
                repaired, reason = 0, BlockChangeType.RESET

        row = ensure_leaderboard_row(self.session, provider, lock=True)
        row.last_processed_block = repaired
        row.updated_at = now_iso()
        self._audit(provider, stored if stored is not None and stored >= 0 else None, repaired, reason)
        self.session.flush()

        logger.warning(
            "Watermark repaired",
            provider=provider.display_name,
            old=raw,
            new=repaired,
            reason=reason.value,
        )
        return repaired

    def reset_to_last_transaction(self, provider: Provider) -> int:
        """Operator repair: rewind to the last block bearing a recorded transaction."""
        last_tx = self.last_transaction_block(provider) or 0
        row = ensure_leaderboard_row(self.session, provider, lock=True)
        old = coerce_block(row.last_processed_block)
        row.last_processed_block = last_tx
        row.last_transaction_block = last_tx
        row.updated_at = now_iso()
        self._audit(provider, old, last_tx, BlockChangeType.RESET)
        self.session.flush()
        logger.info("Watermark reset", provider=provider.display_name, old=old, new=last_tx)
        return last_tx

    def audit_trail(self, provider: Provider, limit: int = 50) -> Sequence[BlockProcessingLog]:
        stmt = (
            select(BlockProcessingLog)
            .where(BlockProcessingLog.provider_entry_namehash == provider.namehash)
            .order_by(BlockProcessingLog.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()
