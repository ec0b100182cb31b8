"""Result dataclasses returned by service operations."""

from dataclasses import dataclass, field
from decimal import Decimal

from db.enums import BlockChangeType, ProviderHealth, RunStatus
from paytracker.services.schemas.chain import TransactionRecord


@dataclass(frozen=True)
class Watermark:
    # None means the stored value could not be parsed as a block number.
    last_processed_block: int | None = 0
    last_transaction_block: int = 0


@dataclass
class ReconciliationResult:
    new_transactions: list[TransactionRecord]
    previous_watermark: int
    new_watermark: int
    reached_safe_height: bool
    fetched_count: int = 0
    change_type: BlockChangeType | None = None

    @property
    def changed(self) -> bool:
        return self.change_type is not None


@dataclass
class RunSummary:
    run_id: str
    status: RunStatus
    chain_height: int | None = None
    safe_height: int | None = None
    providers_total: int = 0
    providers_processed: int = 0
    providers_skipped: int = 0
    providers_failed: int = 0
    transactions_added: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ProviderStatus:
    namehash: str
    name: str
    wallet_address: str
    last_processed_block: int | None
    last_transaction_block: int
    transaction_count: int
    total_received: Decimal
    unique_sender_count: int
    health: ProviderHealth


@dataclass
class StatsDrift:
    namehash: str
    name: str
    stored: dict[str, object]
    expected: dict[str, object]
