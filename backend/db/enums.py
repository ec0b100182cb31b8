"""Enumeration types for the provider payment tracker."""

from enum import Enum


class BlockChangeType(str, Enum):
    """Why a provider's watermark moved (block_processing_log.change_type)."""

    NORMAL_ADVANCE = "normal_advance"
    CONSERVATIVE_ADVANCE = "conservative_advance"
    CORRUPTION_FIX = "corruption_fix"
    LAST_TRANSACTION_FALLBACK = "last_transaction_fallback"
    RESET = "reset"


ADVANCE_TYPES = frozenset({BlockChangeType.NORMAL_ADVANCE, BlockChangeType.CONSERVATIVE_ADVANCE})


class RunStatus(str, Enum):
    """Status of a tracker run."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"  # at least one provider failed


class ProviderHealth(str, Enum):
    """Operator-facing watermark health classification."""

    OK = "ok"
    NOT_STARTED = "not_started"
    BEHIND = "behind"
    TOO_FAR_AHEAD = "too_far_ahead"
    CORRUPTED = "corrupted"
