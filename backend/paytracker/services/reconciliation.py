"""Incremental block-range reconciliation for one provider wallet."""

from typing import Protocol

import structlog
from sqlalchemy.orm import Session, sessionmaker

from db.connection import session_scope
from db.enums import BlockChangeType
from paytracker.services._helpers import iso_from_epoch, scale_amount
from paytracker.services.schemas.chain import RawTransfer, TransactionRecord
from paytracker.services.schemas.registry import Provider
from paytracker.services.schemas.results import ReconciliationResult
from paytracker.services.watermark import WatermarkStore

logger = structlog.get_logger(__name__)


class TransferSource(Protocol):
    def fetch_incoming(self, wallet: str, from_block: int, to_block: int) -> list[RawTransfer]: ...


class ReconciliationEngine:
    """Decides what a provider's next watermark should be and which transfers count.

    ``reconcile`` only reads; the one exception is watermark repair, which is
    committed in its own short unit of work before any fetch so a failed
    fetch does not lose it. Persisting the result is the ledger writer's job.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        source: TransferSource,
        conservative_step: int = 100,
        repair_tolerance: int = 1000,
        token_decimals: int = 6,
    ) -> None:
        if conservative_step < 1:
            raise ValueError("conservative_step must be at least 1")
        self._session_factory = session_factory
        self.source = source
        self.conservative_step = conservative_step
        self.repair_tolerance = repair_tolerance
        self.token_decimals = token_decimals

    def _checked_watermark(self, provider: Provider, safe_height: int) -> int:
        with session_scope(self._session_factory) as session:
            return WatermarkStore(session).validate_and_repair(
                provider, safe_height, self.repair_tolerance
            )

    def _to_record(
        self, provider: Provider, transfer: RawTransfer, sender_name: str
    ) -> TransactionRecord:
        return TransactionRecord(
            tx_hash=transfer.tx_hash,
            block_number=transfer.block_number,
            timestamp=iso_from_epoch(transfer.timestamp),
            from_address=transfer.from_address,
            from_display_name=sender_name,
            to_address=transfer.to_address,
            provider_id=provider.provider_id,
            provider_entry_name=provider.display_name,
            value_amount=scale_amount(transfer.value, self.token_decimals),
            gas_used=transfer.gas_used,
        )

    def reconcile(
        self, provider: Provider, allow_list: dict[str, str], safe_height: int
    ) -> ReconciliationResult:
        log = logger.bind(provider=provider.display_name, wallet=provider.wallet_address)

        watermark = self._checked_watermark(provider, safe_height)
        from_block = watermark + 1
        if from_block > safe_height:
            log.debug("Provider caught up", watermark=watermark, safe_height=safe_height)
            return ReconciliationResult(
                new_transactions=[],
                previous_watermark=watermark,
                new_watermark=watermark,
                reached_safe_height=False,
            )

        fetched = self.source.fetch_incoming(provider.wallet_address, from_block, safe_height)
        fetched = sorted(fetched, key=lambda t: t.block_number)

        in_window: list[RawTransfer] = []
        for transfer in fetched:
            if transfer.block_number < from_block or transfer.block_number > safe_height:
                log.warning(
                    "Dropping transfer outside block window",
                    tx_hash=transfer.tx_hash,
                    block=transfer.block_number,
                    from_block=from_block,
                    safe_height=safe_height,
                )
                continue
            in_window.append(transfer)

        max_block_seen = watermark
        matched: list[TransactionRecord] = []
        seen_hashes: set[str] = set()
        for transfer in in_window:
            max_block_seen = max(max_block_seen, transfer.block_number)
            sender_name = allow_list.get(transfer.from_address)
            if sender_name is None or transfer.tx_hash in seen_hashes:
                continue
            seen_hashes.add(transfer.tx_hash)
            matched.append(self._to_record(provider, transfer, sender_name))

        if not in_window:
            new_watermark = min(watermark + self.conservative_step, safe_height)
            change_type = BlockChangeType.CONSERVATIVE_ADVANCE
        else:
            new_watermark = min(max_block_seen, safe_height)
            change_type = BlockChangeType.NORMAL_ADVANCE

        result = ReconciliationResult(
            new_transactions=matched,
            previous_watermark=watermark,
            new_watermark=new_watermark,
            reached_safe_height=new_watermark >= safe_height,
            fetched_count=len(fetched),
            change_type=change_type if new_watermark != watermark or matched else None,
        )
        log.info(
            "Reconciled provider",
            from_block=from_block,
            to_block=safe_height,
            fetched=len(fetched),
            matched=len(matched),
            previous_watermark=watermark,
            new_watermark=new_watermark,
            advance=change_type.value,
        )
        return result
