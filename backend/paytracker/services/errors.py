"""Shared exception hierarchy for tracker services."""

# ── Registry ──────────────────────────────────────────────────────────────────


class RegistryError(Exception):
    """Base exception for identity registry errors."""


class NamespaceNotFoundError(RegistryError):
    """Configured namespace root does not exist in the registry."""


# ── Explorer ──────────────────────────────────────────────────────────────────


class ExplorerError(Exception):
    """Base exception for block-explorer errors."""


class UpstreamError(ExplorerError):
    """Transient upstream failure (transport error, HTTP 5xx, NOTOK reply)."""


class RateLimitedError(UpstreamError):
    """Upstream quota exceeded."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponseError(UpstreamError):
    """Upstream replied with something we cannot parse."""


class UpstreamUnavailableError(ExplorerError):
    """Retries exhausted."""


class ResultWindowExceededError(ExplorerError):
    """A block range lists more transfers than the explorer will page through."""


# ── Watermark ─────────────────────────────────────────────────────────────────


class WatermarkError(Exception):
    """Base exception for watermark errors."""


class WatermarkOutOfRangeError(WatermarkError):
    """Refusing to persist a block outside [0, CHAIN_SANITY_CEILING)."""


class WatermarkRegressionError(WatermarkError):
    """An advance would move the watermark backwards."""


# ── Ledger ────────────────────────────────────────────────────────────────────


class LedgerError(Exception):
    """Base exception for ledger writer errors."""
