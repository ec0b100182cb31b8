"""Tests for paytracker.services.reconciliation."""

import math
from collections.abc import Callable
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session, sessionmaker

from conftest import MEMBER_1, MEMBER_2, STRANGER, WALLET_A, FakeExplorer
from db.connection import session_scope
from db.enums import BlockChangeType
from paytracker.services.errors import UpstreamUnavailableError
from paytracker.services.ledger import LedgerWriter
from paytracker.services.reconciliation import ReconciliationEngine
from paytracker.services.schemas.chain import RawTransfer
from paytracker.services.schemas.registry import Provider
from paytracker.services.watermark import WatermarkStore, ensure_leaderboard_row

MakeTransfer = Callable[..., RawTransfer]


def set_watermark(factory: sessionmaker[Session], provider: Provider, block: int) -> None:
    with session_scope(factory) as session:
        WatermarkStore(session).set(provider, block, BlockChangeType.RESET)


def stored_watermark(factory: sessionmaker[Session], provider: Provider) -> int | None:
    with factory() as session:
        return WatermarkStore(session).get(provider).last_processed_block


@pytest.fixture()
def engine_under_test(session_factory: sessionmaker[Session], explorer: FakeExplorer) -> ReconciliationEngine:
    return ReconciliationEngine(session_factory, explorer, conservative_step=100)


class TestScenarios:
    def test_mixed_senders_advance_to_max_block(
        self,
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        explorer.add(
            make_transfer(90, sender=MEMBER_2),
            make_transfer(10, sender=MEMBER_1),
            make_transfer(50, sender=STRANGER),
        )

        result = engine_under_test.reconcile(provider, allow_list, safe_height=100)

        assert [t.block_number for t in result.new_transactions] == [10, 90]
        assert result.new_watermark == 90
        assert result.previous_watermark == 0
        assert result.reached_safe_height is False
        assert result.change_type == BlockChangeType.NORMAL_ADVANCE
        assert result.fetched_count == 3
        assert explorer.calls == [(WALLET_A, 1, 100)]

    def test_empty_range_reaches_safe_height(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        set_watermark(session_factory, provider, 500)

        result = engine_under_test.reconcile(provider, allow_list, safe_height=600)

        assert result.new_watermark == 600
        assert result.reached_safe_height is True
        assert result.change_type == BlockChangeType.CONSERVATIVE_ADVANCE

    def test_empty_range_step_capped_at_safe_height(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        set_watermark(session_factory, provider, 590)

        result = engine_under_test.reconcile(provider, allow_list, safe_height=600)

        assert result.new_watermark == 600
        assert result.reached_safe_height is True

    def test_stale_transfer_dropped(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        set_watermark(session_factory, provider, 10)
        explorer.replayed.append(make_transfer(5))
        explorer.add(make_transfer(20, sender=MEMBER_2))

        result = engine_under_test.reconcile(provider, allow_list, safe_height=100)

        assert explorer.calls == [(WALLET_A, 11, 100)]
        assert [t.block_number for t in result.new_transactions] == [20]
        assert result.new_watermark == 20

    def test_only_stale_transfers_counts_as_empty(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        set_watermark(session_factory, provider, 10)
        explorer.replayed.append(make_transfer(5))

        result = engine_under_test.reconcile(provider, allow_list, safe_height=1_000)

        assert result.new_transactions == []
        assert result.new_watermark == 110
        assert result.change_type == BlockChangeType.CONSERVATIVE_ADVANCE


class TestWindow:
    def test_caught_up_is_noop(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        set_watermark(session_factory, provider, 100)

        result = engine_under_test.reconcile(provider, allow_list, safe_height=100)

        assert result.changed is False
        assert result.reached_safe_height is False
        assert result.new_watermark == 100
        assert explorer.calls == []

    def test_beyond_safe_height_dropped(
        self,
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        explorer.replayed.append(make_transfer(150))
        explorer.add(make_transfer(40))

        result = engine_under_test.reconcile(provider, allow_list, safe_height=100)

        assert [t.block_number for t in result.new_transactions] == [40]
        assert result.new_watermark == 40

    def test_unmatched_transfers_still_advance(
        self,
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        explorer.add(make_transfer(70, sender=STRANGER))

        result = engine_under_test.reconcile(provider, allow_list, safe_height=5_000)

        assert result.new_transactions == []
        assert result.new_watermark == 70
        assert result.change_type == BlockChangeType.NORMAL_ADVANCE

    def test_conservative_step_bounds_empty_range(
        self,
        engine_under_test: ReconciliationEngine,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        result = engine_under_test.reconcile(provider, allow_list, safe_height=10_000)
        assert result.new_watermark == 100
        assert result.reached_safe_height is False

    def test_empty_provider_eventually_catches_up(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        safe_height = 1_050
        ledger = LedgerWriter(session_factory)
        runs = 0
        while True:
            result = engine_under_test.reconcile(provider, allow_list, safe_height)
            if not result.changed:
                break
            ledger.apply_result(provider, result)
            runs += 1
            assert runs <= math.ceil(safe_height / 100)

        assert stored_watermark(session_factory, provider) == safe_height
        assert runs == 11


class TestNormalisation:
    def test_record_fields(
        self,
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        explorer.add(make_transfer(30, sender=MEMBER_2, value=2_750_000))

        [record] = engine_under_test.reconcile(provider, allow_list, safe_height=100).new_transactions

        assert record.value_amount == Decimal("2.75")
        assert record.timestamp == "2023-11-14T22:13:50+00:00"
        assert record.from_display_name == "bob.hypr"
        assert record.provider_id == "weather-1"
        assert record.provider_entry_name == "weatherapi.grid-beta.hypr"
        assert record.to_address == WALLET_A

    def test_duplicate_hashes_in_reply_collapsed(
        self,
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
        make_transfer: MakeTransfer,
    ) -> None:
        t = make_transfer(30)
        explorer.add(t, t)
        result = engine_under_test.reconcile(provider, allow_list, safe_height=100)
        assert len(result.new_transactions) == 1


class TestRepair:
    def test_repair_committed_before_fetch_failure(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        with session_scope(session_factory) as session:
            ensure_leaderboard_row(session, provider).last_processed_block = 999_999_999
        explorer.failing_wallets.add(WALLET_A)

        with pytest.raises(UpstreamUnavailableError):
            engine_under_test.reconcile(provider, allow_list, safe_height=31_522_845)

        assert stored_watermark(session_factory, provider) == 0

    def test_corrupted_watermark_repaired_above_safe_height(
        self,
        session_factory: sessionmaker[Session],
        engine_under_test: ReconciliationEngine,
        explorer: FakeExplorer,
        provider: Provider,
        allow_list: dict[str, str],
    ) -> None:
        with session_scope(session_factory) as session:
            ensure_leaderboard_row(session, provider).last_processed_block = 315_228_551

        result = engine_under_test.reconcile(provider, allow_list, safe_height=31_522_845)

        assert result.previous_watermark == 31_522_855
        assert result.changed is False
        assert explorer.calls == []
        assert stored_watermark(session_factory, provider) == 31_522_855

    def test_rejects_zero_step(self, session_factory: sessionmaker[Session], explorer: FakeExplorer) -> None:
        with pytest.raises(ValueError):
            ReconciliationEngine(session_factory, explorer, conservative_step=0)
