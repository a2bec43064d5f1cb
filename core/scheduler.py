"""
Vault Engine Core: Scheduler

Drives one cycle per tick across all vaults:

1. Invalidate the cycle price cache
2. Enumerate vaults, run each on a bounded worker pool under its lease
3. Per vault, strictly sequential:
   valuate → detect drift → plan → record pending → execute → finalize
4. Then, within the same lease, take-profit:
   valuate → evaluate strategy → record pending → execute → finalize
5. Emit events, return a TickResult

Failures stay with their vault: a valuation/planning error fails that vault
for this cycle only (no history entry); an execution error aborts the
remaining instructions and finalizes the history entry PARTIAL or FAILED.
The vault lease is renewed before every instruction; a lost lease stops the
plan like a shutdown does.
Nothing is retried automatically; retry(history_id) is explicit and
idempotent.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.cycle_state import VaultCycleStateMachine, VaultCycleStatus
from core.drift import DriftDetector
from core.events import EngineEventType, EventEmitter
from core.exceptions import (
    EstimatedValuationRefused,
    LeaseUnavailable,
    RetryNotAllowed,
    SwapError,
    SwapExecutionFailed,
    SwapQuoteFailed,
    SwapTimeout,
    VaultEngineError,
)
from core.models import (
    Allocation,
    HistoryEntry,
    HistoryKind,
    HistoryStatus,
    InstructionOutcome,
    InstructionStatus,
    RebalanceInstruction,
    SwapQuote,
    TakeProfitStrategy,
    TriggerSource,
    ValuationResult,
    Vault,
    utcnow,
)
from core.planner import RebalancePlan, RebalancePlanner
from core.price_feed import CyclePriceCache, PriceSource
from core.swap import SwapExecutor
from core.take_profit import TakeProfitEvaluator
from core.valuation import ValuationCalculator
from infra.lease import VaultLease, VaultLeaseManager
from infra.metrics import MetricsRecorder
from infra.vault_store import VaultStore

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {HistoryStatus.FAILED, HistoryStatus.PARTIAL}


class OutcomeStatus(Enum):
    NO_ACTION = "no_action"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


_HISTORY_TO_OUTCOME = {
    HistoryStatus.COMPLETED: OutcomeStatus.COMPLETED,
    HistoryStatus.PARTIAL: OutcomeStatus.PARTIAL,
    HistoryStatus.FAILED: OutcomeStatus.FAILED,
}


@dataclass
class ActionOutcome:
    """Result of one rebalance or take-profit attempt for a vault."""
    kind: HistoryKind
    status: OutcomeStatus
    reason: Optional[str] = None
    history_id: Optional[str] = None
    outcomes: List[InstructionOutcome] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VaultCycleResult:
    vault_id: str
    status: OutcomeStatus
    reason: Optional[str] = None
    rebalance: Optional[ActionOutcome] = None
    take_profit: Optional[ActionOutcome] = None
    stage_durations: Dict[str, float] = field(default_factory=dict)

    @property
    def history_ids(self) -> List[str]:
        return [a.history_id for a in (self.rebalance, self.take_profit) if a and a.history_id]

    @classmethod
    def skipped(cls, vault_id: str, reason: str) -> "VaultCycleResult":
        return cls(vault_id=vault_id, status=OutcomeStatus.SKIPPED, reason=reason)


@dataclass
class TickResult:
    started_at: datetime
    duration_seconds: float
    results: Dict[str, VaultCycleResult] = field(default_factory=dict)
    stage_durations: Dict[str, float] = field(default_factory=dict)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self.results.values():
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    @property
    def status(self) -> str:
        counts = self.counts()
        if counts.get(OutcomeStatus.FAILED.value) or counts.get(OutcomeStatus.PARTIAL.value):
            return "degraded"
        if counts.get(OutcomeStatus.COMPLETED.value):
            return "actioned"
        return "idle"


@dataclass
class RetryOutcome:
    history_id: str
    status: str
    result_history_ids: List[str]
    replayed: bool
    result: Optional[VaultCycleResult] = None


def _aggregate(outcomes: Sequence[Optional[ActionOutcome]]) -> OutcomeStatus:
    statuses = {o.status for o in outcomes if o is not None}
    for status in (OutcomeStatus.FAILED, OutcomeStatus.PARTIAL, OutcomeStatus.COMPLETED):
        if status in statuses:
            return status
    return OutcomeStatus.NO_ACTION


class VaultScheduler:
    """
    Scheduler for vault rebalancing and take-profit.

    Args:
        store: Vault/allocation/history store
        price_source: Price source; wrapped in a per-cycle cache owned here
        swap_executor: External swap service
        lease_manager: Per-vault leases (default: in-process, 300s TTL)
        events: Event emitter for observability subscribers
        metrics: Optional Prometheus recorder
        max_workers: Vaults evaluated concurrently per tick
        instruction_timeout_seconds: Deadline for one instruction, quote and execute together
        allow_estimated: Trade against valuations with estimated holdings
        max_price_impact_pct: Reject quotes above this impact (None: no limit)
        take_profit_enabled: Evaluate take-profit settings on scheduled ticks
        price_cache_ttl_seconds: Carry cached prices across ticks for this long
        clock: Returns the current UTC time
        max_hung_swap_calls: Timed-out swap calls still running before new
            instructions are refused (default: max_workers)
    """

    def __init__(
        self,
        store: VaultStore,
        price_source: PriceSource,
        swap_executor: SwapExecutor,
        lease_manager: Optional[VaultLeaseManager] = None,
        events: Optional[EventEmitter] = None,
        metrics: Optional[MetricsRecorder] = None,
        max_workers: int = 4,
        instruction_timeout_seconds: float = 30.0,
        allow_estimated: bool = True,
        max_price_impact_pct: Optional[Decimal] = None,
        take_profit_enabled: bool = True,
        price_cache_ttl_seconds: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
        max_hung_swap_calls: Optional[int] = None,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.store = store
        self.price_cache = CyclePriceCache(price_source, ttl_seconds=price_cache_ttl_seconds)
        self.swap_executor = swap_executor
        self.leases = lease_manager or VaultLeaseManager()
        self.events = events or EventEmitter()
        self.metrics = metrics
        self.max_workers = max_workers
        self.instruction_timeout_seconds = instruction_timeout_seconds
        self.allow_estimated = allow_estimated
        self.max_price_impact_pct = Decimal(str(max_price_impact_pct)) if max_price_impact_pct is not None else None
        self.take_profit_enabled = take_profit_enabled
        self.clock = clock

        self.valuation = ValuationCalculator()
        self.drift = DriftDetector()
        self.planner = RebalancePlanner(allow_estimated=allow_estimated)
        self.take_profit = TakeProfitEvaluator()
        self.states = VaultCycleStateMachine()

        self._stop = Event()
        self.max_hung_swap_calls = max_hung_swap_calls if max_hung_swap_calls is not None else max_workers
        self._hung_calls = 0
        self._hung_lock = Lock()

        if self.leases.ttl_seconds <= 2 * instruction_timeout_seconds:
            logger.warning(
                f"Lease TTL {self.leases.ttl_seconds}s leaves little headroom over the "
                f"{instruction_timeout_seconds}s instruction deadline; vaults may lose their lease mid-plan"
            )

        logger.info(
            f"Initialized VaultScheduler: workers={max_workers}, "
            f"instruction_timeout={instruction_timeout_seconds}s, allow_estimated={allow_estimated}"
        )

    # Lifecycle

    def request_stop(self) -> None:
        """In-flight instructions finish; nothing new starts."""
        if not self._stop.is_set():
            logger.info("Stop requested: no new swap instructions will start")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def hung_swap_calls(self) -> int:
        """Swap calls that timed out and have not returned yet."""
        with self._hung_lock:
            return self._hung_calls

    def close(self) -> None:
        self.request_stop()
        hung = self.hung_swap_calls
        if hung:
            logger.warning(f"Closing with {hung} swap call(s) still running past their deadline")

    # Scheduled cycle

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Run one cycle over every vault."""
        now = now or self.clock()
        started = time.monotonic()
        self.price_cache.start_cycle()

        vaults = self.store.list_vaults()
        self.events.emit(EngineEventType.CYCLE_START, vaults=len(vaults), started_at=now.isoformat())

        tick = TickResult(started_at=now, duration_seconds=0.0)
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="vault-cycle") as pool:
            futures = {
                pool.submit(self._run_vault, vault.id, now, TriggerSource.SCHEDULED): vault.id
                for vault in vaults
            }
            for future in as_completed(futures):
                vault_id = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Vault {vault_id} task crashed: {e}", exc_info=True)
                    result = VaultCycleResult(vault_id=vault_id, status=OutcomeStatus.FAILED, reason=str(e))
                tick.results[vault_id] = result
                for stage, seconds in result.stage_durations.items():
                    tick.stage_durations[stage] = tick.stage_durations.get(stage, 0.0) + seconds

        tick.duration_seconds = time.monotonic() - started
        self.events.emit(
            EngineEventType.CYCLE_COMPLETE,
            status=tick.status,
            counts=tick.counts(),
            duration_seconds=round(tick.duration_seconds, 4),
        )
        return tick

    # Explicit operations

    def rebalance_vault(self, vault_id: str, force: bool = False, now: Optional[datetime] = None) -> VaultCycleResult:
        """
        Manual rebalance. Works for auto_rebalance=False vaults; still needs a
        drift or time trigger unless force=True.

        Raises:
            VaultNotFound, LeaseUnavailable
        """
        self.store.get_vault(vault_id)
        return self._run_vault(
            vault_id, now or self.clock(), TriggerSource.MANUAL,
            do_take_profit=False, force_rebalance=force, raise_on_contention=True,
        )

    def execute_take_profit(self, vault_id: str, now: Optional[datetime] = None) -> VaultCycleResult:
        """
        Explicit take-profit execution (the only way a manual strategy runs).
        Never realizes a loss for scheduled strategies.

        Raises:
            VaultNotFound, LeaseUnavailable
        """
        self.store.get_vault(vault_id)
        return self._run_vault(
            vault_id, now or self.clock(), TriggerSource.MANUAL,
            do_rebalance=False, force_take_profit=True, raise_on_contention=True,
        )

    def retry(self, history_id: str, now: Optional[datetime] = None) -> RetryOutcome:
        """
        Retry a FAILED or PARTIAL history entry by re-evaluating its vault from
        scratch. Idempotent per history id: a second call returns the recorded
        result without trading.

        Raises:
            HistoryNotFound, RetryNotAllowed, LeaseUnavailable
        """
        entry = self.store.get_history(history_id)
        if entry.status not in RETRYABLE_STATUSES:
            raise RetryNotAllowed(history_id, entry.status.value)

        now = now or self.clock()
        lease = self._acquire(entry.vault_id, owner=f"retry:{history_id}", raise_on_contention=True)
        try:
            existing = self.store.get_retry(history_id)
            if existing is not None:
                logger.info(f"Retry of {history_id} already recorded ({existing.outcome_status}); not re-running")
                return RetryOutcome(
                    history_id=history_id,
                    status=existing.outcome_status,
                    result_history_ids=existing.result_history_ids,
                    replayed=True,
                )

            is_rebalance = entry.kind == HistoryKind.REBALANCE
            force_tp = False
            if not is_rebalance:
                setting = self.store.get_take_profit_setting(entry.vault_id)
                force_tp = setting is not None and setting.strategy == TakeProfitStrategy.MANUAL

            result = self._process_vault(
                entry.vault_id, now, TriggerSource.RETRY, lease,
                do_rebalance=is_rebalance,
                do_take_profit=not is_rebalance,
                force_take_profit=force_tp,
                retry_of=history_id,
            )
            if result.status == OutcomeStatus.FAILED and not result.history_ids:
                # Nothing was traded; leave the ledger open so the retry can be repeated
                return RetryOutcome(
                    history_id=history_id,
                    status=result.status.value,
                    result_history_ids=[],
                    replayed=False,
                    result=result,
                )
            record = self.store.record_retry(history_id, result.status.value, result.history_ids)
            return RetryOutcome(
                history_id=history_id,
                status=record.outcome_status,
                result_history_ids=record.result_history_ids,
                replayed=False,
                result=result,
            )
        finally:
            self.leases.release(lease)

    # Per-vault task

    def _acquire(self, vault_id: str, owner: str, raise_on_contention: bool) -> Optional[VaultLease]:
        lease = self.leases.try_acquire(vault_id, owner=owner)
        if lease is None:
            if self.metrics:
                self.metrics.record_lease_contention(vault_id)
            if raise_on_contention:
                raise LeaseUnavailable(vault_id)
        return lease

    def _run_vault(
        self,
        vault_id: str,
        now: datetime,
        trigger: TriggerSource,
        do_rebalance: bool = True,
        do_take_profit: bool = True,
        force_rebalance: bool = False,
        force_take_profit: bool = False,
        raise_on_contention: bool = False,
    ) -> VaultCycleResult:
        if self._stop.is_set():
            return VaultCycleResult.skipped(vault_id, "shutdown")

        lease = self._acquire(vault_id, owner=trigger.value, raise_on_contention=raise_on_contention)
        if lease is None:
            logger.info(f"Vault {vault_id} skipped: lease held by another cycle")
            return VaultCycleResult.skipped(vault_id, "lease_unavailable")
        try:
            return self._process_vault(
                vault_id, now, trigger, lease,
                do_rebalance=do_rebalance,
                do_take_profit=do_take_profit,
                force_rebalance=force_rebalance,
                force_take_profit=force_take_profit,
            )
        finally:
            self.leases.release(lease)

    def _process_vault(
        self,
        vault_id: str,
        now: datetime,
        trigger: TriggerSource,
        lease: VaultLease,
        do_rebalance: bool = True,
        do_take_profit: bool = True,
        force_rebalance: bool = False,
        force_take_profit: bool = False,
        retry_of: Optional[str] = None,
    ) -> VaultCycleResult:
        """Caller holds the vault's lease."""
        result = VaultCycleResult(vault_id=vault_id, status=OutcomeStatus.NO_ACTION)
        try:
            if do_rebalance:
                vault = self.store.get_vault(vault_id)
                if trigger == TriggerSource.SCHEDULED and not vault.auto_rebalance:
                    logger.debug(f"Vault {vault_id}: auto-rebalance disabled, skipping drift check")
                else:
                    result.rebalance = self._rebalance(vault, now, trigger, lease, force_rebalance, retry_of,
                                                       result.stage_durations)
                    self.states.finish(vault_id)

            if do_take_profit and (self.take_profit_enabled or trigger != TriggerSource.SCHEDULED):
                result.take_profit = self._take_profit(vault_id, now, trigger, lease, force_take_profit, retry_of,
                                                       result.stage_durations)
                self.states.finish(vault_id)

        except Exception as e:
            logger.error(f"Vault {vault_id} cycle failed: {e}", exc_info=True)
            self.states.finish(vault_id)
            result.status = OutcomeStatus.FAILED
            result.reason = str(e)
            return result

        result.status = _aggregate([result.rebalance, result.take_profit])
        failed = [a for a in (result.rebalance, result.take_profit) if a and a.status == OutcomeStatus.FAILED]
        if failed:
            result.reason = failed[0].reason
        return result

    # Rebalance

    def _rebalance(
        self,
        vault: Vault,
        now: datetime,
        trigger: TriggerSource,
        lease: VaultLease,
        force: bool,
        retry_of: Optional[str],
        durations: Dict[str, float],
    ) -> ActionOutcome:
        kind = HistoryKind.REBALANCE
        self.states.transition(vault.id, VaultCycleStatus.EVALUATING)
        try:
            allocations = self.store.get_allocations(vault.id)
            setting = self.store.get_take_profit_setting(vault.id)
            reference = setting.baseline_value_usd if setting else None
            with _timed("valuate", durations):
                valuation = self._valuate(vault, allocations, reference)
            evaluation = self.drift.evaluate(vault, valuation, now)

            self.events.emit(
                EngineEventType.VAULT_EVALUATED, vault.id,
                total_value_usd=str(valuation.total_value_usd),
                max_drift_bp=valuation.max_drift_bp,
                estimated=valuation.estimated,
                needs_rebalance=evaluation.needs_rebalance,
            )
            if evaluation.drift_triggered:
                self.events.emit(
                    EngineEventType.DRIFT_EXCEEDED, vault.id,
                    reasons=[r.to_dict() for r in evaluation.reasons if r.kind == "drift"],
                )

            if not evaluation.needs_rebalance and not force:
                self.states.transition(vault.id, VaultCycleStatus.NO_ACTION_NEEDED)
                return self._record_outcome(ActionOutcome(kind=kind, status=OutcomeStatus.NO_ACTION,
                                                          reason="empty portfolio" if valuation.is_empty
                                                          else "within threshold"))

            self.states.transition(vault.id, VaultCycleStatus.PLANNING)
            with _timed("plan", durations):
                plan = self.planner.plan(vault, allocations, valuation)

        except VaultEngineError as e:
            return self._fail_before_execution(vault.id, kind, e)

        reasons = [r.to_dict() for r in evaluation.reasons]
        if plan.is_empty and plan.partial:
            return self._unresolved_drift(vault.id, plan, reasons)
        if plan.is_empty:
            # Nothing beyond threshold: a due cadence is satisfied as-is
            if evaluation.time_triggered:
                self.store.update_vault(vault.id, last_rebalanced_at=now)
            self.states.transition(vault.id, VaultCycleStatus.NO_ACTION_NEEDED)
            return self._record_outcome(ActionOutcome(kind=kind, status=OutcomeStatus.NO_ACTION,
                                                      reason="no swaps needed", detail={"reasons": reasons}))

        self.events.emit(
            EngineEventType.REBALANCE_TRIGGERED, vault.id,
            trigger=trigger.value,
            reasons=reasons,
            instructions=len(plan.instructions),
            partial_plan=plan.partial,
            estimated_gas_units=plan.estimated_gas_units,
        )
        entry = HistoryEntry(
            vault_id=vault.id,
            kind=kind,
            trigger=trigger,
            instructions=list(plan.instructions),
            detail={"reasons": reasons, "plan": plan.to_dict(), "valuation": valuation.to_dict()},
            retry_of=retry_of,
        )
        final = self._execute_and_record(entry, durations, lease)

        status = _HISTORY_TO_OUTCOME[final.status]
        reason = final.failure_reason
        if final.status == HistoryStatus.COMPLETED and plan.partial:
            # Every swap went through but drift beyond threshold remains; the cadence stays due
            status = OutcomeStatus.PARTIAL
            reason = f"residual drift beyond threshold: {plan.residual_drift_bp}"
            self.events.emit(EngineEventType.REBALANCE_COMPLETED, vault.id, history_id=final.id,
                             instructions=len(final.instructions), residual_drift_bp=plan.residual_drift_bp)
            logger.warning(f"Vault {vault.id}: rebalance executed, {reason}")
        elif final.status == HistoryStatus.COMPLETED:
            self.store.update_vault(vault.id, last_rebalanced_at=now)
            self.events.emit(EngineEventType.REBALANCE_COMPLETED, vault.id, history_id=final.id,
                             instructions=len(final.instructions))
            logger.info(f"Vault {vault.id}: rebalance completed ({len(final.instructions)} swap(s))")
        else:
            self.events.emit(EngineEventType.REBALANCE_FAILED, vault.id, history_id=final.id,
                             status=final.status.value, reason=final.failure_reason,
                             outcomes=[o.to_dict() for o in final.outcomes])
            logger.warning(f"Vault {vault.id}: rebalance {final.status.value}: {final.failure_reason}")

        return self._record_outcome(ActionOutcome(
            kind=kind,
            status=status,
            reason=reason,
            history_id=final.id,
            outcomes=final.outcomes,
            detail={"reasons": reasons, "partial_plan": plan.partial,
                    "residual_drift_bp": dict(plan.residual_drift_bp)},
        ))

    def _unresolved_drift(self, vault_id: str, plan: RebalancePlan, reasons: List[Dict[str, Any]]) -> ActionOutcome:
        """Drift beyond threshold with no counterpart to trade against."""
        reason = f"drift cannot be resolved: residual {plan.residual_drift_bp}"
        logger.warning(f"Vault {vault_id}: {reason}")
        self.states.transition(vault_id, VaultCycleStatus.FAILED, error=reason)
        self.events.emit(EngineEventType.REBALANCE_FAILED, vault_id, stage="planning", reason=reason,
                         residual_drift_bp=plan.residual_drift_bp)
        return self._record_outcome(ActionOutcome(
            kind=HistoryKind.REBALANCE,
            status=OutcomeStatus.FAILED,
            reason=reason,
            detail={"reasons": reasons, "residual_drift_bp": dict(plan.residual_drift_bp)},
        ))

    # Take-profit

    def _take_profit(
        self,
        vault_id: str,
        now: datetime,
        trigger: TriggerSource,
        lease: VaultLease,
        force: bool,
        retry_of: Optional[str],
        durations: Dict[str, float],
    ) -> Optional[ActionOutcome]:
        kind = HistoryKind.TAKE_PROFIT
        setting = self.store.get_take_profit_setting(vault_id)
        if setting is None or not setting.active:
            return None

        self.states.transition(vault_id, VaultCycleStatus.EVALUATING)
        try:
            vault = self.store.get_vault(vault_id)
            allocations = self.store.get_allocations(vault_id)
            with _timed("valuate", durations):
                valuation = self._valuate(vault, allocations, setting.baseline_value_usd)
            decision = self.take_profit.evaluate(vault, setting, valuation, now, force=force)

            if not decision.trigger:
                updated = self.take_profit.apply_bookkeeping(setting, decision, now)
                if updated is not None:
                    self.store.update_take_profit_setting(updated)
                self.states.transition(vault_id, VaultCycleStatus.NO_ACTION_NEEDED)
                return self._record_outcome(ActionOutcome(kind=kind, status=OutcomeStatus.NO_ACTION,
                                                          reason=decision.reason))

            self.states.transition(vault_id, VaultCycleStatus.PLANNING)
            if valuation.estimated and not self.allow_estimated:
                raise EstimatedValuationRefused(vault_id)
            instructions = self.take_profit.realization_instructions(vault, valuation, decision.amount_to_realize)

        except VaultEngineError as e:
            return self._fail_before_execution(vault_id, kind, e)

        if not instructions:
            self.states.transition(vault_id, VaultCycleStatus.NO_ACTION_NEEDED)
            return self._record_outcome(ActionOutcome(kind=kind, status=OutcomeStatus.NO_ACTION,
                                                      reason=f"nothing to sell into {vault.stable_asset}"))

        detail = {
            "strategy": setting.strategy.value,
            "reason": decision.reason,
            "current_value_usd": str(decision.current_value_usd),
            "baseline_value_usd": str(setting.baseline_value_usd) if setting.baseline_value_usd is not None else None,
            "gain_pct": str(decision.gain_pct) if decision.gain_pct is not None else None,
            "amount_to_realize": str(decision.amount_to_realize),
            "stable_asset": vault.stable_asset,
        }
        self.events.emit(EngineEventType.TAKE_PROFIT_TRIGGERED, vault_id, trigger=trigger.value, **detail)

        entry = HistoryEntry(
            vault_id=vault_id,
            kind=kind,
            trigger=trigger,
            instructions=instructions,
            detail=detail,
            retry_of=retry_of,
        )
        final = self._execute_and_record(entry, durations, lease)
        realized = sum(
            (instr.amount_usd for instr, out in zip(final.instructions, final.outcomes)
             if out.status == InstructionStatus.COMPLETED),
            Decimal("0"),
        )

        if final.status == HistoryStatus.COMPLETED:
            # Baseline moves only after a successful realization
            updated = self.take_profit.apply_success(setting, decision, realized, now)
            self.store.update_take_profit_setting(updated)
            self.events.emit(EngineEventType.TAKE_PROFIT_COMPLETED, vault_id, history_id=final.id,
                             realized_usd=str(realized), new_baseline_usd=str(updated.baseline_value_usd))
            logger.info(f"Vault {vault_id}: realized ${realized} into {vault.stable_asset}")
        else:
            self.events.emit(EngineEventType.TAKE_PROFIT_FAILED, vault_id, history_id=final.id,
                             status=final.status.value, reason=final.failure_reason,
                             realized_usd=str(realized))
            logger.warning(f"Vault {vault_id}: take-profit {final.status.value}: {final.failure_reason}")

        return self._record_outcome(ActionOutcome(
            kind=kind,
            status=_HISTORY_TO_OUTCOME[final.status],
            reason=final.failure_reason,
            history_id=final.id,
            outcomes=final.outcomes,
            detail={"realized_usd": str(realized)},
        ))

    # Shared steps

    def _valuate(self, vault: Vault, allocations: List[Allocation],
                 reference: Optional[Decimal]) -> ValuationResult:
        prices = self.price_cache.get_prices([a.asset for a in allocations])
        return self.valuation.valuate(vault, allocations, prices, reference_value=reference)

    def _fail_before_execution(self, vault_id: str, kind: HistoryKind, error: VaultEngineError) -> ActionOutcome:
        logger.warning(f"Vault {vault_id}: {kind.value} aborted before execution: {error}")
        self.states.transition(vault_id, VaultCycleStatus.FAILED, error=str(error))
        event = (EngineEventType.REBALANCE_FAILED if kind == HistoryKind.REBALANCE
                 else EngineEventType.TAKE_PROFIT_FAILED)
        self.events.emit(event, vault_id, stage="evaluation", reason=str(error), error_type=type(error).__name__)
        return self._record_outcome(ActionOutcome(kind=kind, status=OutcomeStatus.FAILED, reason=str(error)))

    def _record_outcome(self, outcome: ActionOutcome) -> ActionOutcome:
        if self.metrics:
            self.metrics.record_vault_outcome(outcome.kind.value, outcome.status.value)
        return outcome

    def _execute_and_record(self, entry: HistoryEntry, durations: Dict[str, float],
                            lease: VaultLease) -> HistoryEntry:
        self.store.create_history(entry)
        outcomes: List[InstructionOutcome] = []
        try:
            self.states.transition(entry.vault_id, VaultCycleStatus.EXECUTING)
            with _timed("execute", durations):
                status, failure_reason = self._execute_plan(entry.instructions, lease, outcomes)
            self.states.transition(entry.vault_id, VaultCycleStatus.RECORDING)
            with _timed("record", durations):
                return self.store.finalize_history(
                    entry.id,
                    status,
                    outcomes=outcomes,
                    detail={"completed_instructions": _completed(outcomes)},
                    failure_reason=failure_reason,
                )
        except Exception as e:
            self._finalize_after_crash(entry, outcomes, e)
            raise

    def _finalize_after_crash(self, entry: HistoryEntry, outcomes: List[InstructionOutcome], error: Exception) -> None:
        """Leave no entry PENDING: an unexpected error still yields a retryable record."""
        logger.error(f"Vault {entry.vault_id}: history {entry.id} interrupted: {error}", exc_info=True)
        completed = _completed(outcomes)
        try:
            self.store.finalize_history(
                entry.id,
                HistoryStatus.PARTIAL if completed else HistoryStatus.FAILED,
                outcomes=outcomes,
                detail={"completed_instructions": completed},
                failure_reason=f"unexpected error ({type(error).__name__}): {error}",
            )
        except Exception as finalize_error:
            logger.error(f"Vault {entry.vault_id}: could not finalize history {entry.id}: {finalize_error}")

    def _execute_plan(
        self,
        instructions: Sequence[RebalanceInstruction],
        lease: VaultLease,
        outcomes: List[InstructionOutcome],
    ) -> Tuple[HistoryStatus, Optional[str]]:
        """
        Run instructions strictly in order, appending one outcome each. The
        first failure, a stop request or a lost lease marks every later
        instruction skipped.
        """
        failure_reason: Optional[str] = None
        halt: Optional[str] = None
        committed = 0

        for instruction in instructions:
            if failure_reason is None and halt is None:
                if self._stop.is_set():
                    halt = "shutdown"
                else:
                    try:
                        self.leases.renew(lease)
                    except LeaseUnavailable:
                        halt = "lease lost"
            if failure_reason is not None or halt is not None:
                outcomes.append(InstructionOutcome(
                    sequence=instruction.sequence,
                    status=InstructionStatus.SKIPPED,
                    error=halt or "aborted after earlier failure",
                ))
                self._count_instruction(InstructionStatus.SKIPPED)
                continue

            deadline = time.monotonic() + self.instruction_timeout_seconds
            quote: Optional[SwapQuote] = None
            try:
                quote = self._call_swap(self.swap_executor.quote, instruction, SwapQuoteFailed, deadline)
                if self.max_price_impact_pct is not None and quote.price_impact_pct > self.max_price_impact_pct:
                    raise SwapQuoteFailed(
                        instruction,
                        f"price impact {quote.price_impact_pct}% exceeds {self.max_price_impact_pct}%",
                    )
                result = self._call_swap(self.swap_executor.execute, instruction, SwapExecutionFailed, deadline)
                if not result.ok:
                    raise SwapExecutionFailed(instruction, result.error or "swap execution failed")
            except SwapError as e:
                failure_reason = f"instruction {instruction.sequence} ({type(e).__name__}): {e.reason}"
                logger.warning(
                    f"Swap {instruction.source_asset} → {instruction.destination_asset} failed: {e.reason}"
                )
                outcomes.append(InstructionOutcome(sequence=instruction.sequence, status=InstructionStatus.FAILED,
                                                   error=e.reason, quote=quote))
                self._count_instruction(InstructionStatus.FAILED)
                continue

            committed += 1
            outcomes.append(InstructionOutcome(sequence=instruction.sequence, status=InstructionStatus.COMPLETED,
                                               tx_ref=result.tx_ref, quote=quote))
            self._count_instruction(InstructionStatus.COMPLETED)

        if failure_reason is None and halt is None:
            return HistoryStatus.COMPLETED, None
        if failure_reason is None:
            failure_reason = f"{halt} before all instructions started"
            if halt == "lease lost":
                logger.warning(f"Vault {lease.vault_id}: lease lost mid-plan, remaining instructions skipped")
        return (HistoryStatus.PARTIAL if committed else HistoryStatus.FAILED), failure_reason

    def _call_swap(self, fn: Callable, instruction: RebalanceInstruction, error_cls, deadline: float):
        """
        Call the swap service on a dedicated thread, bounded by the
        instruction's deadline. A call that overruns keeps its thread and
        is counted as hung until it returns.
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SwapTimeout(instruction, f"instruction deadline of {self.instruction_timeout_seconds}s exhausted")
        hung = self.hung_swap_calls
        if hung >= self.max_hung_swap_calls:
            raise error_cls(instruction, f"swap service unresponsive: {hung} earlier call(s) still running")

        future: Future = Future()
        Thread(
            target=_run_swap_call,
            args=(fn, instruction, future),
            name=f"vault-swap-{instruction.sequence}",
            daemon=True,
        ).start()
        try:
            return future.result(timeout=remaining)
        except FuturesTimeout:
            self._track_hung(future)
            raise SwapTimeout(
                instruction, f"instruction timed out after {self.instruction_timeout_seconds}s"
            ) from None
        except SwapError:
            raise
        except Exception as e:
            raise error_cls(instruction, f"{type(e).__name__}: {e}") from e

    def _track_hung(self, future: Future) -> None:
        with self._hung_lock:
            self._hung_calls += 1
            hung = self._hung_calls
        logger.warning(f"Swap call overran its deadline; {hung} call(s) still running")
        if self.metrics:
            self.metrics.record_hung_swap_calls(hung)
        future.add_done_callback(self._hung_call_returned)

    def _hung_call_returned(self, _future: Future) -> None:
        with self._hung_lock:
            self._hung_calls -= 1
            hung = self._hung_calls
        logger.info(f"Hung swap call returned; {hung} still running")
        if self.metrics:
            self.metrics.record_hung_swap_calls(hung)

    def _count_instruction(self, status: InstructionStatus) -> None:
        if self.metrics:
            self.metrics.record_instruction(status.value)


@contextmanager
def _timed(stage: str, durations: Dict[str, float]):
    start = time.perf_counter()
    try:
        yield
    finally:
        durations[stage] = durations.get(stage, 0.0) + (time.perf_counter() - start)


def _completed(outcomes: Sequence[InstructionOutcome]) -> int:
    return sum(1 for o in outcomes if o.status == InstructionStatus.COMPLETED)


def _run_swap_call(fn: Callable, instruction: RebalanceInstruction, future: Future) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        future.set_result(fn(instruction))
    except Exception as e:
        future.set_exception(e)
