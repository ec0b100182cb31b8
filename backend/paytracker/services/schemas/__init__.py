"""Shared dataclasses for tracker services."""

from paytracker.services.schemas.chain import RawTransfer, TransactionRecord
from paytracker.services.schemas.registry import Provider
from paytracker.services.schemas.results import (
    ProviderStatus,
    ReconciliationResult,
    RunSummary,
    StatsDrift,
    Watermark,
)

__all__ = [
    # Registry schemas
    "Provider",
    # Chain schemas
    "RawTransfer",
    "TransactionRecord",
    # Result schemas
    "ProviderStatus",
    "ReconciliationResult",
    "RunSummary",
    "StatsDrift",
    "Watermark",
]
