"""Etherscan-compatible block-explorer client: chain height and token transfers."""

from typing import Any, Optional

import requests
import structlog

from config import ExplorerSettings
from paytracker.services._helpers import normalize_address
from paytracker.services.errors import (
    ExplorerError,
    MalformedResponseError,
    RateLimitedError,
    ResultWindowExceededError,
    UpstreamError,
)
from paytracker.services.retry import RateLimiter, RetryPolicy
from paytracker.services.schemas.chain import RawTransfer

logger = structlog.get_logger(__name__)

# Etherscan refuses page * offset beyond this.
MAX_RESULT_WINDOW = 10_000

_EMPTY_MARKERS = ("no transactions found", "no records found")


def _retry_after(resp: requests.Response) -> float | None:
    raw = (resp.headers.get("Retry-After") or "").strip()
    return float(raw) if raw.isdigit() else None


def _parse_transfer(item: dict[str, Any]) -> RawTransfer:
    try:
        return RawTransfer(
            tx_hash=str(item["hash"]).lower(),
            block_number=int(item["blockNumber"]),
            timestamp=int(item["timeStamp"]),
            from_address=normalize_address(item["from"]),
            to_address=normalize_address(item["to"]),
            value=int(item["value"]),
            gas_used=int(item.get("gasUsed") or 0),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedResponseError(f"Unparseable transfer {str(item)[:120]}: {e}") from e


class ExplorerClient:
    """Reads the chain head and incoming token transfers for a wallet.

    Every HTTP call waits on the shared ``RateLimiter`` and runs under the
    ``RetryPolicy``; after retries are exhausted ``UpstreamUnavailableError``
    surfaces to the caller.
    """

    def __init__(
        self,
        settings: ExplorerSettings,
        http: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.api_url = settings.api_url
        self.token_contract = settings.token_contract.lower()
        self.page_size = max(1, min(settings.page_size, MAX_RESULT_WINDOW))
        self._http = http or requests.Session()
        self._limiter = rate_limiter or RateLimiter(settings.rate_limit_interval)
        self._retry = retry_policy or RetryPolicy(
            max_attempts=settings.retry_attempts,
            backoff_base=settings.retry_backoff_base,
            backoff_max=settings.retry_backoff_max,
        )

    def __enter__(self) -> "ExplorerClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _request(self, params: dict[str, Any]) -> dict[str, Any]:
        query = {
            **params,
            "chainid": str(self.settings.chain_id),
            "apikey": self.settings.api_key,
        }
        self._limiter.acquire()
        try:
            resp = self._http.get(self.api_url, params=query, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise UpstreamError(f"Explorer request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitedError("Explorer rate limit (HTTP 429)", retry_after=_retry_after(resp))
        if resp.status_code >= 500:
            raise UpstreamError(f"Explorer HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise ExplorerError(f"Explorer HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Explorer returned non-JSON body: {resp.text[:200]}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Explorer returned {type(data).__name__}, expected object")
        return data

    # ------------------------------------------------------------------
    # Chain height
    # ------------------------------------------------------------------

    def _fetch_height(self) -> int:
        data = self._request({"module": "proxy", "action": "eth_blockNumber"})
        result = data.get("result")
        if isinstance(result, str) and result.startswith("0x"):
            try:
                return int(result, 16)
            except ValueError as e:
                raise MalformedResponseError(f"Bad block number {result!r}") from e
        text = str(result or data.get("message") or data.get("error") or "")
        if "rate limit" in text.lower():
            raise RateLimitedError(text)
        raise MalformedResponseError(f"Failed to get block height: {text[:200]}")

    def current_height(self) -> int:
        height = self._retry.call(self._fetch_height, operation="eth_blockNumber")
        logger.debug("Fetched chain height", height=height)
        return height

    # ------------------------------------------------------------------
    # Token transfers
    # ------------------------------------------------------------------

    def _fetch_page(self, wallet: str, from_block: int, to_block: int, page: int) -> list[RawTransfer]:
        data = self._request(
            {
                "module": "account",
                "action": "tokentx",
                "address": wallet,
                "contractaddress": self.token_contract,
                "startblock": str(from_block),
                "endblock": str(to_block),
                "page": str(page),
                "offset": str(self.page_size),
                "sort": "asc",
            }
        )
        status = str(data.get("status", ""))
        result = data.get("result")

        if status == "1" and isinstance(result, list):
            return [_parse_transfer(item) for item in result]
        if status == "0":
            text = f"{data.get('message', '')} {result if isinstance(result, str) else ''}".strip()
            lowered = text.lower()
            if any(marker in lowered for marker in _EMPTY_MARKERS):
                return []
            if "rate limit" in lowered:
                raise RateLimitedError(text)
            raise UpstreamError(f"Explorer request failed: {text[:200]}")
        raise MalformedResponseError(f"Unexpected tokentx reply: status={status!r}")

    def fetch_incoming(self, wallet: str, from_block: int, to_block: int) -> list[RawTransfer]:
        """Incoming token transfers to ``wallet`` within ``[from_block, to_block]``.

        An empty list means "no transfers in range"; it is never an error.
        If the result window runs out before any incoming block is fully
        listed, ``ResultWindowExceededError`` is raised so the range is retried
        rather than reported as complete.
        """
        if from_block > to_block:
            return []
        wallet = normalize_address(wallet)

        transfers: list[RawTransfer] = []
        truncated = False
        page = 1
        while True:
            batch = self._retry.call(
                self._fetch_page, wallet, from_block, to_block, page, operation="tokentx"
            )
            transfers.extend(batch)
            if len(batch) < self.page_size:
                break
            if (page + 1) * self.page_size > MAX_RESULT_WINDOW:
                truncated = True
                break
            page += 1

        incoming = [t for t in transfers if t.to_address == wallet]

        if truncated:
            # The last listed block may be only partially listed; leave it for the next run.
            top = max(t.block_number for t in transfers)
            trimmed = [t for t in incoming if t.block_number < top]
            if not trimmed:
                raise ResultWindowExceededError(
                    f"{len(transfers)} transfers listed for {wallet} in blocks "
                    f"{from_block}-{to_block} without a complete incoming block below {top}"
                )
            logger.warning(
                "Explorer result window exhausted, trimming last block",
                wallet=wallet,
                from_block=from_block,
                to_block=to_block,
                trimmed_block=top,
                dropped=len(incoming) - len(trimmed),
            )
            incoming = trimmed

        logger.debug(
            "Fetched incoming transfers",
            wallet=wallet,
            from_block=from_block,
            to_block=to_block,
            fetched=len(transfers),
            incoming=len(incoming),
        )
        return incoming
