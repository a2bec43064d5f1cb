"""
Tests for TakeProfitEvaluator strategies and realization instructions.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.models import AssetValuation, EmptyPortfolio, TakeProfitSetting, ValuationResult, Vault
from core.take_profit import TakeProfitEvaluator

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def valuation(total, **values):
    values = values or {"BTC": total}
    assets = [
        AssetValuation(asset=a, price=Decimal(1), value_usd=Decimal(str(v)), current_bp=0, target_bp=0)
        for a, v in values.items()
    ]
    return ValuationResult(vault_id="v1", total_value_usd=Decimal(str(total)), assets=assets)


@pytest.fixture
def vault():
    return Vault(id="v1", owner="0x", stable_asset="USDC")


@pytest.fixture
def evaluator():
    return TakeProfitEvaluator()


class TestPercentageThreshold:

    def test_gain_over_threshold_triggers(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="percentage-threshold", threshold_pct=10,
                                    percentage_to_sell=20, baseline_value_usd=1000)
        decision = evaluator.evaluate(vault, setting, valuation(1150), NOW)

        assert decision.trigger
        assert decision.gain_pct == Decimal("15")
        assert decision.amount_to_realize == Decimal("230.00")

    def test_baseline_resets_after_success(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="percentage-threshold", threshold_pct=10,
                                    percentage_to_sell=20, baseline_value_usd=1000)
        decision = evaluator.evaluate(vault, setting, valuation(1150), NOW)
        updated = evaluator.apply_success(setting, decision, decision.amount_to_realize, NOW)

        assert updated.baseline_value_usd == Decimal("920.00")
        assert updated.last_execution_at == NOW

    def test_gain_below_threshold(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="percentage-threshold", threshold_pct=10,
                                    percentage_to_sell=20, baseline_value_usd=1000)
        decision = evaluator.evaluate(vault, setting, valuation(1050), NOW)
        assert not decision.trigger
        assert "below" in decision.reason

    def test_gain_exactly_at_threshold_triggers(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="percentage-threshold", threshold_pct=10,
                                    percentage_to_sell=20, baseline_value_usd=1000)
        assert evaluator.evaluate(vault, setting, valuation(1100), NOW).trigger

    def test_missing_baseline_is_initialized(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="percentage-threshold", threshold_pct=10,
                                    percentage_to_sell=20)
        decision = evaluator.evaluate(vault, setting, valuation(1000), NOW)
        assert not decision.trigger
        assert decision.initialize_baseline

        updated = evaluator.apply_bookkeeping(setting, decision, NOW)
        assert updated.baseline_value_usd == Decimal("1000")
        assert updated.last_execution_at is None


class TestScheduledInterval:

    def setting(self, **kwargs):
        kwargs.setdefault("baseline_value_usd", 1000)
        kwargs.setdefault("last_execution_at", NOW - timedelta(days=8))
        return TakeProfitSetting.scheduled("v1", "weekly", 10, **kwargs)

    def test_interval_elapsed_with_gain_triggers(self, evaluator, vault):
        decision = evaluator.evaluate(vault, self.setting(), valuation(1200), NOW)
        assert decision.trigger
        assert decision.amount_to_realize == Decimal("120.00")

    def test_interval_not_elapsed(self, evaluator, vault):
        setting = self.setting(last_execution_at=NOW - timedelta(days=2))
        decision = evaluator.evaluate(vault, setting, valuation(1200), NOW)
        assert not decision.trigger
        assert not decision.restart_timer

    def test_never_realizes_a_loss(self, evaluator, vault):
        decision = evaluator.evaluate(vault, self.setting(), valuation(900), NOW)
        assert not decision.trigger
        assert decision.restart_timer

        updated = evaluator.apply_bookkeeping(self.setting(), decision, NOW)
        assert updated.last_execution_at == NOW
        assert updated.baseline_value_usd == Decimal("1000")

    def test_forced_still_refuses_loss(self, evaluator, vault):
        setting = self.setting(last_execution_at=NOW - timedelta(hours=1))
        assert not evaluator.evaluate(vault, setting, valuation(1000), NOW, force=True).trigger

    def test_first_evaluation_starts_timer(self, evaluator, vault):
        setting = self.setting(last_execution_at=None)
        decision = evaluator.evaluate(vault, setting, valuation(1500), NOW)
        assert not decision.trigger
        assert decision.restart_timer


class TestManualAndInactive:

    def test_manual_needs_explicit_call(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="manual", percentage_to_sell=50,
                                    baseline_value_usd=1000)
        assert not evaluator.evaluate(vault, setting, valuation(2000), NOW).trigger

        decision = evaluator.evaluate(vault, setting, valuation(2000), NOW, force=True)
        assert decision.trigger
        assert decision.amount_to_realize == Decimal("1000.00")

    def test_inactive_never_triggers(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="manual", percentage_to_sell=50, active=False)
        decision = evaluator.evaluate(vault, setting, valuation(2000), NOW, force=True)
        assert not decision.trigger
        assert decision.reason == "inactive"

    def test_empty_portfolio_never_triggers(self, evaluator, vault):
        setting = TakeProfitSetting(vault_id="v1", strategy="manual", percentage_to_sell=50)
        empty = EmptyPortfolio(vault_id="v1", total_value_usd=Decimal(0), assets=[])
        assert not evaluator.evaluate(vault, setting, empty, NOW, force=True).trigger


class TestRealizationInstructions:

    def test_pro_rata_into_stable(self, vault):
        snap = valuation(1000, BTC=600, ETH=300, USDC=100)
        instructions = TakeProfitEvaluator.realization_instructions(vault, snap, Decimal("90"))

        assert [(i.source_asset, i.destination_asset) for i in instructions] == [("BTC", "USDC"), ("ETH", "USDC")]
        assert [i.amount_usd for i in instructions] == [Decimal("60.00"), Decimal("30.00")]
        assert sum(i.amount_usd for i in instructions) == Decimal("90")

    def test_remainder_lands_on_last_asset(self, vault):
        snap = valuation(300, BTC=100, ETH=100, SOL=100)
        instructions = TakeProfitEvaluator.realization_instructions(vault, snap, Decimal("100"))
        assert [i.amount_usd for i in instructions] == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]

    def test_capped_at_non_stable_value(self, vault):
        snap = valuation(1000, BTC=200, USDC=800)
        instructions = TakeProfitEvaluator.realization_instructions(vault, snap, Decimal("500"))
        assert len(instructions) == 1
        assert instructions[0].amount_usd == Decimal("200")

    def test_all_stable_yields_nothing(self, vault):
        snap = valuation(1000, USDC=1000)
        assert TakeProfitEvaluator.realization_instructions(vault, snap, Decimal("100")) == []
