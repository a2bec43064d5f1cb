"""
Tests for VaultScheduler: per-vault cycles, leases, execution outcomes,
take-profit bookkeeping, shutdown and explicit retry.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from core.events import EngineEventType
from core.exceptions import LeaseUnavailable, RetryNotAllowed, VaultNotFound
from core.models import (
    Allocation,
    HistoryKind,
    HistoryStatus,
    InstructionStatus,
    TakeProfitSetting,
    TriggerSource,
)
from core.planner import RebalancePlan
from core.scheduler import OutcomeStatus
from core.swap import SimulatedSwapExecutor
from infra.lease import VaultLeaseManager
from infra.metrics import MetricsRecorder
from tests.helpers import FlakySwapExecutor, HangingSwapExecutor, add_vault

NOW = datetime(2026, 5, 1, 9, 30, tzinfo=timezone.utc)

# BTC +20%, ETH +10%, SOL -15%, USDC -15% at 100/100/50/1 prices; threshold 100bp -> 3 swaps
FOUR_ASSET_HOLDINGS = {"BTC": "4.5", "ETH": "3.5", "SOL": 2, "USDC": 100}
FOUR_ASSET_TARGETS = {"BTC": 25, "ETH": 25, "SOL": 25, "USDC": 25}


class TestScheduledTick:

    def test_drifted_vault_rebalanced(self, store, make_scheduler, recorder):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler()

        tick = scheduler.tick(now=NOW)

        result = tick.results["v1"]
        assert result.status == OutcomeStatus.COMPLETED
        assert tick.status == "actioned"

        entry = store.get_history(result.rebalance.history_id)
        assert entry.status == HistoryStatus.COMPLETED
        assert entry.trigger == TriggerSource.SCHEDULED
        assert len(entry.instructions) == 1
        assert entry.instructions[0].amount_usd == Decimal("100.00")
        assert entry.outcomes[0].tx_ref.startswith("sim-")
        assert store.get_vault("v1").last_rebalanced_at == NOW

        types = [e.type for e in recorder.events]
        assert types[0] == EngineEventType.CYCLE_START
        assert types[-1] == EngineEventType.CYCLE_COMPLETE
        assert EngineEventType.DRIFT_EXCEEDED in types
        assert EngineEventType.REBALANCE_TRIGGERED in types
        assert EngineEventType.REBALANCE_COMPLETED in types

    def test_balanced_vault_no_action(self, store, make_scheduler, recorder):
        add_vault(store, "v1", {"BTC": "5.2", "ETH": "4.8"})
        tick = make_scheduler().tick(now=NOW)

        assert tick.results["v1"].status == OutcomeStatus.NO_ACTION
        assert tick.status == "idle"
        assert store.list_history("v1") == []
        assert recorder.of_type(EngineEventType.REBALANCE_TRIGGERED) == []

    def test_empty_vault_no_action(self, store, make_scheduler):
        add_vault(store, "v1", holdings={})
        tick = make_scheduler().tick(now=NOW)
        assert tick.results["v1"].status == OutcomeStatus.NO_ACTION
        assert tick.results["v1"].rebalance.reason == "empty portfolio"

    def test_due_cadence_with_nothing_to_trade_marks_rebalanced(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5}, rebalance_cadence="weekly")
        tick = make_scheduler().tick(now=NOW)

        assert tick.results["v1"].rebalance.reason == "no swaps needed"
        assert store.get_vault("v1").last_rebalanced_at == NOW
        assert store.list_history("v1") == []

    def test_auto_rebalance_disabled_skips_scheduled_drift(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4}, auto_rebalance=False)
        scheduler = make_scheduler()

        tick = scheduler.tick(now=NOW)
        assert tick.results["v1"].status == OutcomeStatus.NO_ACTION
        assert store.list_history("v1") == []

        manual = scheduler.rebalance_vault("v1", now=NOW)
        assert manual.status == OutcomeStatus.COMPLETED
        assert store.get_history(manual.rebalance.history_id).trigger == TriggerSource.MANUAL

    def test_many_vaults_evaluated_concurrently(self, store, make_scheduler):
        for i in range(10):
            add_vault(store, f"v{i}", {"BTC": 6, "ETH": 4})
        tick = make_scheduler(max_workers=4).tick(now=NOW)

        assert len(tick.results) == 10
        assert tick.counts() == {"completed": 10}
        assert set(tick.stage_durations) >= {"valuate", "plan", "execute", "record"}

    def test_one_vault_failure_does_not_affect_others(self, store, make_scheduler, recorder):
        add_vault(store, "good", {"BTC": 6, "ETH": 4})
        add_vault(store, "bad", {"BTC": 6, "XYZ": 4})

        tick = make_scheduler().tick(now=NOW)

        assert tick.results["good"].status == OutcomeStatus.COMPLETED
        assert tick.results["bad"].status == OutcomeStatus.FAILED
        assert "missing price for XYZ" in tick.results["bad"].reason
        assert store.list_history("bad") == []
        assert tick.status == "degraded"

        failed = recorder.of_type(EngineEventType.REBALANCE_FAILED)
        assert [e.vault_id for e in failed] == ["bad"]
        assert failed[0].payload["error_type"] == "MissingPrice"

    def test_estimated_holdings_refused_when_disallowed(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": None}, rebalance_cadence="weekly")
        tick = make_scheduler(allow_estimated=False).tick(now=NOW)

        assert tick.results["v1"].status == OutcomeStatus.FAILED
        assert "estimated holdings" in tick.results["v1"].reason
        assert store.get_vault("v1").last_rebalanced_at is None


class TestLeases:

    def test_leased_vault_skipped_on_tick(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        leases = VaultLeaseManager()
        scheduler = make_scheduler(lease_manager=leases, metrics=MetricsRecorder(enabled=False))

        lease = leases.try_acquire("v1", owner="other-cycle")
        tick = scheduler.tick(now=NOW)

        assert tick.results["v1"].status == OutcomeStatus.SKIPPED
        assert tick.results["v1"].reason == "lease_unavailable"
        assert store.list_history("v1") == []
        assert scheduler.metrics.lease_contention == 1

        leases.release(lease)
        assert scheduler.tick(now=NOW).results["v1"].status == OutcomeStatus.COMPLETED

    def test_explicit_rebalance_raises_on_contention(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        leases = VaultLeaseManager()
        scheduler = make_scheduler(lease_manager=leases)
        leases.try_acquire("v1")

        with pytest.raises(LeaseUnavailable):
            scheduler.rebalance_vault("v1", now=NOW)

    def test_lease_released_after_cycle(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        leases = VaultLeaseManager()
        make_scheduler(lease_manager=leases).tick(now=NOW)
        assert not leases.is_held("v1")

    def test_unknown_vault(self, make_scheduler):
        with pytest.raises(VaultNotFound):
            make_scheduler().rebalance_vault("missing")


class TestExecutionOutcomes:

    def test_failure_mid_plan_is_partial(self, store, prices, make_scheduler, recorder):
        add_vault(store, "v1", FOUR_ASSET_HOLDINGS, FOUR_ASSET_TARGETS, drift_threshold_bp=100)
        executor = FlakySwapExecutor(prices, fail_on_sequence={1})
        scheduler = make_scheduler(swap_executor=executor)

        result = scheduler.tick(now=NOW).results["v1"]

        assert result.status == OutcomeStatus.PARTIAL
        entry = store.get_history(result.rebalance.history_id)
        assert entry.status == HistoryStatus.PARTIAL
        assert [o.status for o in entry.outcomes] == [
            InstructionStatus.COMPLETED, InstructionStatus.FAILED, InstructionStatus.SKIPPED,
        ]
        assert entry.outcomes[2].error == "aborted after earlier failure"
        assert "instruction 1" in entry.failure_reason
        # Third instruction never reached the swap service
        assert [i.sequence for i in executor.calls] == [0, 1]
        assert store.get_vault("v1").last_rebalanced_at is None
        assert recorder.of_type(EngineEventType.REBALANCE_FAILED)[0].payload["status"] == "partial"

    def test_first_instruction_failure_is_failed(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler(swap_executor=FlakySwapExecutor(prices, fail_all=True))

        result = scheduler.tick(now=NOW).results["v1"]
        assert result.status == OutcomeStatus.FAILED
        assert store.get_history(result.rebalance.history_id).status == HistoryStatus.FAILED

    def test_hung_swap_times_out(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        executor = HangingSwapExecutor(prices, hold_seconds=2.0)
        scheduler = make_scheduler(swap_executor=executor, instruction_timeout_seconds=0.1)
        try:
            result = scheduler.tick(now=NOW).results["v1"]
        finally:
            executor.release()

        assert result.status == OutcomeStatus.FAILED
        entry = store.get_history(result.rebalance.history_id)
        assert "timed out" in entry.outcomes[0].error
        assert "SwapTimeout" in entry.failure_reason

    def test_price_impact_ceiling_rejects_quote(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler(max_price_impact_pct=Decimal("0.001"))

        result = scheduler.tick(now=NOW).results["v1"]
        entry = store.get_history(result.rebalance.history_id)
        assert entry.status == HistoryStatus.FAILED
        assert "price impact" in entry.outcomes[0].error
        assert entry.outcomes[0].quote is not None

    def test_history_records_plan_detail(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        result = make_scheduler().tick(now=NOW).results["v1"]
        entry = store.get_history(result.rebalance.history_id)

        assert entry.detail["reasons"][0]["asset"] == "BTC"
        assert entry.detail["plan"]["estimated_gas_units"] == 3_500_000
        assert entry.detail["valuation"]["total_value_usd"] == "1000"
        assert entry.detail["completed_instructions"] == 1


class TestShutdown:

    def test_stop_before_tick_skips_everything(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler()
        scheduler.request_stop()

        tick = scheduler.tick(now=NOW)
        assert tick.results["v1"].status == OutcomeStatus.SKIPPED
        assert tick.results["v1"].reason == "shutdown"
        assert store.list_history("v1") == []

    def test_stop_mid_plan_finishes_in_flight_only(self, store, prices, make_scheduler):
        add_vault(store, "v1", FOUR_ASSET_HOLDINGS, FOUR_ASSET_TARGETS, drift_threshold_bp=100)
        holder = {}

        class StopAfterFirstSwap(SimulatedSwapExecutor):
            def execute(self, instruction):
                result = super().execute(instruction)
                holder["scheduler"].request_stop()
                return result

        scheduler = make_scheduler(swap_executor=StopAfterFirstSwap(prices))
        holder["scheduler"] = scheduler

        result = scheduler.tick(now=NOW).results["v1"]
        entry = store.get_history(result.rebalance.history_id)

        assert entry.status == HistoryStatus.PARTIAL
        assert [o.status for o in entry.outcomes] == [
            InstructionStatus.COMPLETED, InstructionStatus.SKIPPED, InstructionStatus.SKIPPED,
        ]
        assert {o.error for o in entry.outcomes[1:]} == {"shutdown"}


class TestTakeProfit:

    def threshold_setting(self, **kwargs):
        kwargs.setdefault("baseline_value_usd", 800)
        return TakeProfitSetting(vault_id="v1", strategy="percentage-threshold", threshold_pct=10,
                                 percentage_to_sell=20, **kwargs)

    def test_threshold_take_profit_realizes_and_resets_baseline(self, store, make_scheduler, recorder):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5})
        store.create_take_profit_setting(self.threshold_setting())
        metrics = MetricsRecorder(enabled=False)
        scheduler = make_scheduler(metrics=metrics)
        scheduler.events.subscribe(metrics)

        result = scheduler.tick(now=NOW).results["v1"]

        assert result.rebalance.status == OutcomeStatus.NO_ACTION
        assert result.take_profit.status == OutcomeStatus.COMPLETED
        entry = store.get_history(result.take_profit.history_id)
        assert entry.kind == HistoryKind.TAKE_PROFIT
        assert [(i.source_asset, i.destination_asset, i.amount_usd) for i in entry.instructions] == [
            ("BTC", "USDC", Decimal("100.00")), ("ETH", "USDC", Decimal("100.00")),
        ]

        setting = store.get_take_profit_setting("v1")
        assert setting.baseline_value_usd == Decimal("800.00")
        assert setting.last_execution_at == NOW

        completed = recorder.of_type(EngineEventType.TAKE_PROFIT_COMPLETED)
        assert completed[0].payload["realized_usd"] == "200.00"
        assert metrics.event_counts()["take-profit-completed"] == 1

    def test_failed_take_profit_keeps_baseline(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5})
        store.create_take_profit_setting(self.threshold_setting())
        scheduler = make_scheduler(swap_executor=FlakySwapExecutor(prices, fail_all=True))

        result = scheduler.tick(now=NOW).results["v1"]

        assert result.take_profit.status == OutcomeStatus.FAILED
        setting = store.get_take_profit_setting("v1")
        assert setting.baseline_value_usd == Decimal("800")
        assert setting.last_execution_at is None

    def test_baseline_initialized_on_first_sight(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5})
        store.create_take_profit_setting(self.threshold_setting(baseline_value_usd=None))

        result = make_scheduler().tick(now=NOW).results["v1"]

        assert result.take_profit.status == OutcomeStatus.NO_ACTION
        assert store.get_take_profit_setting("v1").baseline_value_usd == Decimal("1000")

    def test_manual_strategy_runs_only_on_explicit_call(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5})
        store.create_take_profit_setting(
            TakeProfitSetting(vault_id="v1", strategy="manual", percentage_to_sell=10, baseline_value_usd=1000)
        )
        scheduler = make_scheduler()

        assert scheduler.tick(now=NOW).results["v1"].take_profit.status == OutcomeStatus.NO_ACTION

        result = scheduler.execute_take_profit("v1", now=NOW)
        assert result.rebalance is None
        assert result.take_profit.status == OutcomeStatus.COMPLETED
        assert store.get_take_profit_setting("v1").baseline_value_usd == Decimal("900.00")

    def test_disabled_take_profit_not_evaluated_on_tick(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5})
        store.create_take_profit_setting(self.threshold_setting())
        result = make_scheduler(take_profit_enabled=False).tick(now=NOW).results["v1"]
        assert result.take_profit is None

    def test_scheduled_interval_skips_loss_and_restarts_timer(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 5, "ETH": 5})
        store.create_take_profit_setting(TakeProfitSetting.scheduled(
            "v1", "daily", 10, baseline_value_usd=1200, last_execution_at=NOW - timedelta(days=2),
        ))

        result = make_scheduler().tick(now=NOW).results["v1"]

        assert result.take_profit.status == OutcomeStatus.NO_ACTION
        setting = store.get_take_profit_setting("v1")
        assert setting.last_execution_at == NOW
        assert setting.baseline_value_usd == Decimal("1200")
        assert store.list_history("v1", HistoryKind.TAKE_PROFIT) == []


class TestRetry:

    def test_retry_is_idempotent(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        executor = FlakySwapExecutor(prices, fail_all=True)
        scheduler = make_scheduler(swap_executor=executor)

        failed_id = scheduler.tick(now=NOW).results["v1"].rebalance.history_id
        executor.heal()

        first = scheduler.retry(failed_id, now=NOW)
        assert not first.replayed
        assert first.status == "completed"
        assert len(first.result_history_ids) == 1
        retried = store.get_history(first.result_history_ids[0])
        assert retried.retry_of == failed_id
        assert retried.trigger == TriggerSource.RETRY
        calls_after_first = len(executor.calls)

        second = scheduler.retry(failed_id, now=NOW)
        assert second.replayed
        assert second.result_history_ids == first.result_history_ids
        assert len(executor.calls) == calls_after_first
        assert len(store.list_history("v1")) == 2

    def test_completed_entry_cannot_be_retried(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler()
        done_id = scheduler.tick(now=NOW).results["v1"].rebalance.history_id

        with pytest.raises(RetryNotAllowed):
            scheduler.retry(done_id)

    def test_retry_that_cannot_start_stays_open(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        executor = FlakySwapExecutor(prices, fail_all=True)
        scheduler = make_scheduler(swap_executor=executor)
        failed_id = scheduler.tick(now=NOW).results["v1"].rebalance.history_id

        store.set_allocations("v1", [
            Allocation.from_percentage("v1", "BTC", 50, 6),
            Allocation.from_percentage("v1", "XYZ", 50, 4),
        ])

        outcome = scheduler.retry(failed_id, now=NOW)
        assert outcome.status == "failed"
        assert outcome.result_history_ids == []
        assert store.get_retry(failed_id) is None

    def test_retry_rejects_contended_vault(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        leases = VaultLeaseManager()
        scheduler = make_scheduler(lease_manager=leases,
                                   swap_executor=FlakySwapExecutor(prices, fail_all=True))
        failed_id = scheduler.tick(now=NOW).results["v1"].rebalance.history_id

        leases.try_acquire("v1")
        with pytest.raises(LeaseUnavailable):
            scheduler.retry(failed_id)



class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestResidualDrift:

    def test_spread_overweight_resolved_with_single_swap(self, store, make_scheduler):
        # BTC and ETH each +3.5%, SOL -7%: only SOL breaches the 5% threshold
        add_vault(store, "v1", {"BTC": "2.85", "ETH": "2.85", "SOL": "3.6", "USDC": 250},
                  FOUR_ASSET_TARGETS, rebalance_cadence="weekly")
        scheduler = make_scheduler()

        result = scheduler.tick(now=NOW).results["v1"]

        assert result.status == OutcomeStatus.COMPLETED
        entry = store.get_history(result.rebalance.history_id)
        pairs = [(i.source_asset, i.destination_asset, i.amount_bp) for i in entry.instructions]
        assert pairs == [("BTC", "SOL", 350)]
        assert store.get_vault("v1").last_rebalanced_at == NOW

    def test_drift_with_no_counterpart_fails_without_stamping(self, store, make_scheduler, recorder):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4}, rebalance_cadence="weekly")
        scheduler = make_scheduler()
        stuck = RebalancePlan("v1", partial=True, residual_drift_bp={"BTC": 1000})

        with patch.object(scheduler.planner, "plan", return_value=stuck):
            result = scheduler.tick(now=NOW).results["v1"]

        assert result.status == OutcomeStatus.FAILED
        assert "drift cannot be resolved" in result.rebalance.reason
        assert result.rebalance.detail["residual_drift_bp"] == {"BTC": 1000}
        assert store.list_history("v1") == []
        assert store.get_vault("v1").last_rebalanced_at is None
        failed = recorder.of_type(EngineEventType.REBALANCE_FAILED)
        assert failed[0].payload["stage"] == "planning"

    def test_completed_swaps_with_residual_drift_are_partial(self, store, make_scheduler, recorder):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler()
        plan_fn = scheduler.planner.plan

        def plan_leaving_residual(*args):
            plan = plan_fn(*args)
            plan.partial = True
            plan.residual_drift_bp = {"ETH": 700}
            return plan

        with patch.object(scheduler.planner, "plan", side_effect=plan_leaving_residual):
            result = scheduler.tick(now=NOW).results["v1"]

        assert result.status == OutcomeStatus.PARTIAL
        assert "residual drift" in result.rebalance.reason
        assert store.get_history(result.rebalance.history_id).status == HistoryStatus.COMPLETED
        assert store.get_vault("v1").last_rebalanced_at is None
        completed = recorder.of_type(EngineEventType.REBALANCE_COMPLETED)
        assert completed[0].payload["residual_drift_bp"] == {"ETH": 700}


class TestLeaseRenewal:

    def test_lease_held_through_plan_longer_than_ttl(self, store, prices, make_scheduler):
        add_vault(store, "v1", FOUR_ASSET_HOLDINGS, FOUR_ASSET_TARGETS, drift_threshold_bp=100)
        leases = VaultLeaseManager(ttl_seconds=0.5)
        held = []

        class SlowSwap(SimulatedSwapExecutor):
            def execute(self, instruction):
                held.append(leases.is_held("v1"))
                time.sleep(0.3)
                return super().execute(instruction)

        scheduler = make_scheduler(lease_manager=leases, swap_executor=SlowSwap(prices),
                                   instruction_timeout_seconds=1.0)
        result = scheduler.tick(now=NOW).results["v1"]

        assert result.status == OutcomeStatus.COMPLETED
        assert held == [True, True, True]
        assert not leases.is_held("v1")

    def test_lost_lease_skips_remaining_instructions(self, store, prices, make_scheduler):
        add_vault(store, "v1", FOUR_ASSET_HOLDINGS, FOUR_ASSET_TARGETS, drift_threshold_bp=100)
        clock = FakeClock()
        leases = VaultLeaseManager(ttl_seconds=60, clock=clock)
        intruders = []

        class TakeoverAfterFirstSwap(SimulatedSwapExecutor):
            def execute(self, instruction):
                result = super().execute(instruction)
                if instruction.sequence == 0:
                    clock.now += 61
                    intruders.append(leases.try_acquire("v1", owner="other-cycle"))
                return result

        executor = TakeoverAfterFirstSwap(prices)
        scheduler = make_scheduler(lease_manager=leases, swap_executor=executor)
        result = scheduler.tick(now=NOW).results["v1"]

        entry = store.get_history(result.rebalance.history_id)
        assert entry.status == HistoryStatus.PARTIAL
        assert [o.status for o in entry.outcomes] == [
            InstructionStatus.COMPLETED, InstructionStatus.SKIPPED, InstructionStatus.SKIPPED,
        ]
        assert {o.error for o in entry.outcomes[1:]} == {"lease lost"}
        assert entry.failure_reason == "lease lost before all instructions started"
        # The new holder keeps its lease after the old cycle ends
        assert intruders[0] is not None
        assert leases.is_held("v1")


class TestSwapDeadlines:

    def test_hung_call_does_not_starve_later_swaps(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        release = threading.Event()

        class HangOnce(SimulatedSwapExecutor):
            hung = False

            def execute(self, instruction):
                if not self.hung:
                    self.hung = True
                    release.wait(5.0)
                return super().execute(instruction)

        scheduler = make_scheduler(swap_executor=HangOnce(prices), max_workers=1,
                                   instruction_timeout_seconds=0.3, max_hung_swap_calls=2)
        try:
            first = scheduler.tick(now=NOW).results["v1"]
            assert first.status == OutcomeStatus.FAILED
            assert scheduler.hung_swap_calls == 1

            add_vault(store, "v2", {"BTC": 6, "ETH": 4})
            second = scheduler.tick(now=NOW)
            assert second.results["v1"].status == OutcomeStatus.COMPLETED
            assert second.results["v2"].status == OutcomeStatus.COMPLETED
        finally:
            release.set()

        for _ in range(100):
            if scheduler.hung_swap_calls == 0:
                break
            time.sleep(0.02)
        assert scheduler.hung_swap_calls == 0

    def test_new_swaps_refused_while_too_many_calls_hung(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        executor = HangingSwapExecutor(prices, hold_seconds=5.0)
        scheduler = make_scheduler(swap_executor=executor, instruction_timeout_seconds=0.2,
                                   max_hung_swap_calls=1)
        try:
            scheduler.tick(now=NOW)
            assert scheduler.hung_swap_calls == 1

            result = scheduler.tick(now=NOW).results["v1"]
        finally:
            executor.release()

        entry = store.get_history(result.rebalance.history_id)
        assert entry.status == HistoryStatus.FAILED
        assert "swap service unresponsive" in entry.outcomes[0].error
        assert "SwapQuoteFailed" in entry.failure_reason

    def test_quote_and_execute_share_one_deadline(self, store, prices, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})

        class SlowQuoteAndExecute(SimulatedSwapExecutor):
            def quote(self, instruction):
                time.sleep(0.2)
                return super().quote(instruction)

            def execute(self, instruction):
                time.sleep(0.2)
                return super().execute(instruction)

        scheduler = make_scheduler(swap_executor=SlowQuoteAndExecute(prices), instruction_timeout_seconds=0.3)
        result = scheduler.tick(now=NOW).results["v1"]

        entry = store.get_history(result.rebalance.history_id)
        assert entry.status == HistoryStatus.FAILED
        # Quote went through; the execute call ran out the remaining budget
        assert entry.outcomes[0].quote is not None
        assert "timed out" in entry.outcomes[0].error


class TestInterruptedRecording:

    def test_failed_finalize_leaves_retryable_entry(self, store, make_scheduler):
        add_vault(store, "v1", {"BTC": 6, "ETH": 4})
        scheduler = make_scheduler()
        finalize = store.finalize_history
        failures = [RuntimeError("disk full")]

        def finalize_once_failing(*args, **kwargs):
            if failures:
                raise failures.pop()
            return finalize(*args, **kwargs)

        with patch.object(store, "finalize_history", side_effect=finalize_once_failing):
            result = scheduler.tick(now=NOW).results["v1"]

        assert result.status == OutcomeStatus.FAILED
        assert result.reason == "disk full"
        [entry] = store.list_history("v1")
        assert entry.status == HistoryStatus.PARTIAL
        assert "RuntimeError" in entry.failure_reason
        assert entry.outcomes[0].status == InstructionStatus.COMPLETED

        assert scheduler.retry(entry.id, now=NOW).status == "completed"
