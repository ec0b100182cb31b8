"""SQLAlchemy ORM models.

``Base`` holds the payments ledger owned by this service. ``RegistryBase``
describes the read-only tables of the namespace indexer; it is never created
by ``init_schema``.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import BigInteger, Index, MetaData, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Base mainnet will not reach this for years; anything above is corrupted state.
CHAIN_SANITY_CEILING = 100_000_000

AMOUNT = Numeric(30, 6)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)

    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


class ProviderLeaderboard(Base):
    __tablename__ = "provider_leaderboard"

    provider_entry_namehash: Mapped[str] = mapped_column(String(66), primary_key=True)
    provider_entry_name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_id: Mapped[str] = mapped_column(nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    total_received: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal(0))
    transaction_count: Mapped[int] = mapped_column(nullable=False, default=0)
    unique_sender_count: Mapped[int] = mapped_column(nullable=False, default=0)
    first_transaction_at: Mapped[str | None] = mapped_column()
    last_transaction_at: Mapped[str | None] = mapped_column()
    # Not constrained at the DB level: legacy rows may hold corrupted values
    # that WatermarkStore must be able to read and repair.
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_transaction_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)


class ProviderTransactions(Base):
    __tablename__ = "provider_transactions"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    timestamp: Mapped[str] = mapped_column(nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    from_display_name: Mapped[str] = mapped_column(nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(nullable=False)
    provider_entry_name: Mapped[str] = mapped_column(nullable=False, index=True)
    value_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    gas_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(nullable=False)


class BlockProcessingLog(Base):
    __tablename__ = "block_processing_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider_entry_namehash: Mapped[str] = mapped_column(String(66), nullable=False)
    provider_entry_name: Mapped[str] = mapped_column(String(255), nullable=False)
    old_block_number: Mapped[int | None] = mapped_column(BigInteger)
    new_block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    change_type: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (
        Index("ix_block_log_provider_time", "provider_entry_namehash", "created_at"),
    )


class TrackerState(Base):
    __tablename__ = "tracker_state"

    id: Mapped[int] = mapped_column(primary_key=True, default=1)
    last_run_at: Mapped[str | None] = mapped_column()
    last_successful_run_at: Mapped[str | None] = mapped_column()
    last_error: Mapped[str | None] = mapped_column(Text)
    total_runs: Mapped[int] = mapped_column(nullable=False, default=0)
    successful_runs: Mapped[int] = mapped_column(nullable=False, default=0)
    failed_runs: Mapped[int] = mapped_column(nullable=False, default=0)


class ProcessingRuns(Base):
    __tablename__ = "processing_runs"

    run_id: Mapped[str] = mapped_column(primary_key=True)
    started_at: Mapped[str] = mapped_column(nullable=False)
    completed_at: Mapped[str | None] = mapped_column()
    status: Mapped[str] = mapped_column(nullable=False, default="running")
    chain_height: Mapped[int | None] = mapped_column(BigInteger)
    safe_height: Mapped[int | None] = mapped_column(BigInteger)
    providers_total: Mapped[int] = mapped_column(nullable=False, default=0)
    providers_processed: Mapped[int] = mapped_column(nullable=False, default=0)
    providers_skipped: Mapped[int] = mapped_column(nullable=False, default=0)
    providers_failed: Mapped[int] = mapped_column(nullable=False, default=0)
    transactions_added: Mapped[int] = mapped_column(nullable=False, default=0)
    error_details: Mapped[str | None] = mapped_column(Text)


# -- Namespace indexer (read-only) -----------------------------------------


class RegistryBase(DeclarativeBase):
    metadata = MetaData()


class Entries(RegistryBase):
    __tablename__ = "entries"

    namehash: Mapped[str] = mapped_column(String(66), primary_key=True)
    label: Mapped[str] = mapped_column(nullable=False)
    parent_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(nullable=False)
    tba: Mapped[str | None] = mapped_column(String(42))


class Notes(RegistryBase):
    __tablename__ = "notes"

    entry_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    label: Mapped[str] = mapped_column(primary_key=True)
    interpreted_data: Mapped[str | None] = mapped_column(Text)
