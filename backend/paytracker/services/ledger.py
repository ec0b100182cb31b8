"""Ledger writer: transactions, aggregates and watermark in one unit of work."""

from collections.abc import Iterable, Sequence
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from db.connection import session_scope
from db.enums import BlockChangeType
from db.models import ProviderTransactions
from paytracker.services._helpers import now_iso
from paytracker.services.errors import LedgerError
from paytracker.services.schemas.chain import TransactionRecord
from paytracker.services.schemas.registry import Provider
from paytracker.services.schemas.results import ReconciliationResult
from paytracker.services.watermark import WatermarkStore, ensure_leaderboard_row

logger = structlog.get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[dialect]
    except KeyError:
        raise LedgerError(f"Unsupported database dialect for ledger writes: {dialect}") from None


def wallet_stats(session: Session, wallet: str) -> dict[str, object]:
    """Aggregates over every recorded transaction to ``wallet``."""
    stmt = select(
        func.coalesce(func.sum(ProviderTransactions.value_amount), 0),
        func.count(ProviderTransactions.tx_hash),
        func.count(func.distinct(ProviderTransactions.from_address)),
        func.min(ProviderTransactions.timestamp),
        func.max(ProviderTransactions.timestamp),
        func.coalesce(func.max(ProviderTransactions.block_number), 0),
    ).where(ProviderTransactions.to_address == wallet)
    total, count, senders, first_at, last_at, last_block = session.execute(stmt).one()
    return {
        "total_received": Decimal(str(total)),
        "transaction_count": int(count),
        "unique_sender_count": int(senders),
        "first_transaction_at": first_at,
        "last_transaction_at": last_at,
        "last_transaction_block": int(last_block),
    }


class LedgerWriter:
    """Persists reconciliation results.

    Each ``apply`` opens its own session and commits once: inserted
    transactions, leaderboard aggregates and the watermark either all land or
    none do. Aggregates are rebuilt from every transaction recorded
    for the wallet, so re-applying the same batch leaves them unchanged.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def upsert_providers(self, providers: Iterable[Provider]) -> int:
        """Make sure every provider has a leaderboard row. Stats are left alone."""
        count = 0
        with session_scope(self._session_factory) as session:
            for provider in providers:
                ensure_leaderboard_row(session, provider)
                count += 1
        logger.debug("Upserted provider rows", count=count)
        return count

    def _insert(self, session: Session, records: Sequence[TransactionRecord]) -> list[TransactionRecord]:
        insert = _insert_for(session)
        created_at = now_iso()
        inserted: list[TransactionRecord] = []
        for record in records:
            stmt = (
                insert(ProviderTransactions)
                .values(
                    tx_hash=record.tx_hash,
                    block_number=record.block_number,
                    timestamp=record.timestamp,
                    from_address=record.from_address,
                    from_display_name=record.from_display_name,
                    to_address=record.to_address,
                    provider_id=record.provider_id,
                    provider_entry_name=record.provider_entry_name,
                    value_amount=record.value_amount,
                    gas_used=record.gas_used,
                    created_at=created_at,
                )
                .on_conflict_do_nothing(index_elements=["tx_hash"])
            )
            if session.execute(stmt).rowcount == 1:
                inserted.append(record)
        return inserted

    def apply(
        self,
        provider: Provider,
        new_transactions: Sequence[TransactionRecord],
        new_watermark: int,
        reason: BlockChangeType = BlockChangeType.NORMAL_ADVANCE,
    ) -> int:
        """Record ``new_transactions`` and move the watermark. Returns rows inserted."""
        for record in new_transactions:
            if record.to_address != provider.wallet_address:
                raise LedgerError(
                    f"Transaction {record.tx_hash} is addressed to {record.to_address}, "
                    f"not {provider.display_name} ({provider.wallet_address})"
                )

        with session_scope(self._session_factory) as session:
            row = ensure_leaderboard_row(session, provider, lock=True)

            inserted = self._insert(session, new_transactions)

            # Registry entries may share a wallet; a tx_hash is stored once but
            # credited to every entry on that wallet.
            stats = wallet_stats(session, provider.wallet_address)
            if any(getattr(row, name) != value for name, value in stats.items()):
                for name, value in stats.items():
                    setattr(row, name, value)
                row.updated_at = now_iso()

            WatermarkStore(session).set(provider, new_watermark, reason)

        duplicates = len(new_transactions) - len(inserted)
        logger.info(
            "Applied ledger batch",
            provider=provider.display_name,
            inserted=len(inserted),
            duplicates=duplicates,
            watermark=new_watermark,
            reason=reason.value,
        )
        return len(inserted)

    def apply_result(self, provider: Provider, result: ReconciliationResult) -> int:
        if result.change_type is None:
            return 0
        return self.apply(provider, result.new_transactions, result.new_watermark, result.change_type)
