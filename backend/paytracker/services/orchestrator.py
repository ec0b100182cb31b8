"""Run orchestrator: one reconciliation cycle across every registered provider."""

import time
from collections.abc import Callable
from typing import Optional, Protocol

import structlog
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from db.connection import session_scope
from db.enums import RunStatus
from db.models import ProcessingRuns, TrackerState
from paytracker.services._helpers import dump_json, new_id, now_iso
from paytracker.services.ledger import LedgerWriter
from paytracker.services.reconciliation import ReconciliationEngine, TransferSource
from paytracker.services.registry import IdentityRegistry
from paytracker.services.schemas.results import RunSummary

logger = structlog.get_logger(__name__)


class ChainSource(TransferSource, Protocol):
    def current_height(self) -> int: ...


class PaymentTracker:
    """Sequences a cycle: registry -> chain height -> per-provider reconcile + apply.

    A failure scoped to one provider is recorded and the cycle moves on.
    Registry and chain-height failures abort the cycle after bookkeeping.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        registry: IdentityRegistry,
        explorer: ChainSource,
        engine: Optional[ReconciliationEngine] = None,
        ledger: Optional[LedgerWriter] = None,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self.registry = registry
        self.explorer = explorer
        self.engine = engine or ReconciliationEngine(
            session_factory,
            explorer,
            conservative_step=settings.tracker.conservative_step,
            repair_tolerance=settings.tracker.repair_tolerance,
            token_decimals=settings.explorer.token_decimals,
        )
        self.ledger = ledger or LedgerWriter(session_factory)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _begin_run(self, run_id: str) -> None:
        ts = now_iso()
        with session_scope(self._session_factory) as session:
            state = session.get(TrackerState, 1)
            if state is None:
                state = TrackerState(id=1, total_runs=0, successful_runs=0, failed_runs=0)
                session.add(state)
            state.total_runs += 1
            state.last_run_at = ts
            session.add(ProcessingRuns(run_id=run_id, started_at=ts, status=RunStatus.RUNNING.value))

    def _finish_run(self, summary: RunSummary) -> None:
        ts = now_iso()
        with session_scope(self._session_factory) as session:
            run = session.get(ProcessingRuns, summary.run_id)
            if run is not None:
                run.completed_at = ts
                run.status = summary.status.value
                run.chain_height = summary.chain_height
                run.safe_height = summary.safe_height
                run.providers_total = summary.providers_total
                run.providers_processed = summary.providers_processed
                run.providers_skipped = summary.providers_skipped
                run.providers_failed = summary.providers_failed
                run.transactions_added = summary.transactions_added
                run.error_details = dump_json({"errors": summary.errors}) if summary.errors else None

            state = session.get(TrackerState, 1)
            if state is None:
                return
            if summary.status == RunStatus.FAILED:
                state.failed_runs += 1
            else:
                state.successful_runs += 1
                state.last_successful_run_at = ts
            if summary.errors:
                state.last_error = summary.errors[-1][:2000]

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_once(self) -> RunSummary:
        summary = RunSummary(run_id=new_id(), status=RunStatus.RUNNING)
        log = logger.bind(run_id=summary.run_id)
        self._begin_run(summary.run_id)
        log.info("Tracker run started")

        try:
            providers = self.registry.list_providers(self.settings.registry.namespace_root)
            allow_list = self.registry.build_allow_list()
            summary.providers_total = len(providers)

            summary.chain_height = self.explorer.current_height()
            summary.safe_height = max(summary.chain_height - self.settings.tracker.safety_buffer, 0)
            log.info(
                "Chain height",
                chain_height=summary.chain_height,
                safe_height=summary.safe_height,
            )

            self.ledger.upsert_providers(providers)
        except Exception as e:
            summary.status = RunStatus.FAILED
            summary.errors.append(f"{type(e).__name__}: {e}")
            log.exception("Tracker run aborted")
            self._finish_run(summary)
            raise

        for provider in providers:
            try:
                result = self.engine.reconcile(provider, allow_list, summary.safe_height)
                if result.change_type is None:
                    summary.providers_skipped += 1
                    continue
                summary.transactions_added += self.ledger.apply_result(provider, result)
                summary.providers_processed += 1
            except Exception as e:
                summary.providers_failed += 1
                summary.errors.append(f"{provider.display_name}: {type(e).__name__}: {e}")
                log.exception("Provider reconciliation failed", provider=provider.display_name)

        summary.status = RunStatus.PARTIAL if summary.providers_failed else RunStatus.SUCCESS
        self._finish_run(summary)
        log.info(
            "Tracker run complete",
            status=summary.status.value,
            providers_total=summary.providers_total,
            processed=summary.providers_processed,
            skipped=summary.providers_skipped,
            failed=summary.providers_failed,
            transactions_added=summary.transactions_added,
        )
        return summary

    def run_forever(
        self,
        poll_interval: Optional[float] = None,
        max_cycles: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Daemon mode. A failed cycle is logged and the loop keeps going."""
        interval = poll_interval if poll_interval is not None else self.settings.tracker.poll_interval
        cycles = 0
        while True:
            try:
                self.run_once()
            except Exception:
                logger.exception("Tracker cycle failed; retrying next interval")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return cycles
            logger.info("Sleeping until next cycle", seconds=interval)
            sleep(interval)
