"""Chain-related data transfer objects."""

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class RawTransfer:
    """One token-transfer event as reported by the explorer, addresses lower-cased."""

    tx_hash: str
    block_number: int
    timestamp: int  # unix seconds
    from_address: str
    to_address: str
    value: int  # raw token units
    gas_used: int


@dataclass(frozen=True)
class TransactionRecord:
    tx_hash: str
    block_number: int
    timestamp: str
    from_address: str
    from_display_name: str
    to_address: str
    provider_id: str
    provider_entry_name: str
    value_amount: Decimal
    gas_used: int
