"""
Vault Engine Core: Take-Profit Evaluator

Evaluates a vault's take-profit setting against the current valuation.

Strategies:
- manual: never self-triggers; executes only on an explicit call (force=True)
- percentage-threshold: gain vs baseline >= threshold_pct
- scheduled-interval: now - last_execution >= interval, never realizing a
  loss (current <= baseline skips the cycle and restarts the timer)

The baseline resets on successful execution only (apply_success), never on
mere triggering, so a failed and retried execution cannot double-count gains.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Optional

from core.models import (
    RebalanceInstruction,
    TakeProfitSetting,
    TakeProfitStrategy,
    ValuationResult,
    Vault,
    share_to_bp,
    utcnow,
)

logger = logging.getLogger(__name__)

USD_QUANTUM = Decimal("0.01")
UNITS_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class TakeProfitDecision:
    trigger: bool
    amount_to_realize: Decimal = Decimal("0")
    reason: str = ""
    current_value_usd: Decimal = Decimal("0")
    gain_pct: Optional[Decimal] = None
    restart_timer: bool = False
    initialize_baseline: bool = False


class TakeProfitEvaluator:

    def evaluate(
        self,
        vault: Vault,
        setting: TakeProfitSetting,
        valuation: ValuationResult,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> TakeProfitDecision:
        now = now or utcnow()
        current = valuation.total_value_usd

        if not setting.active:
            return TakeProfitDecision(trigger=False, reason="inactive", current_value_usd=current)
        if valuation.is_empty:
            return TakeProfitDecision(trigger=False, reason="empty portfolio", current_value_usd=current)

        baseline = setting.baseline_value_usd
        gain_pct = None
        if baseline is not None and baseline > 0:
            gain_pct = (current - baseline) / baseline * 100

        if setting.strategy == TakeProfitStrategy.MANUAL:
            if not force:
                return TakeProfitDecision(trigger=False, reason="manual strategy", current_value_usd=current,
                                          gain_pct=gain_pct)
            return self._triggered(setting, current, gain_pct, "manual execution")

        if baseline is None:
            # First sighting: establish a baseline and start measuring from here
            return TakeProfitDecision(
                trigger=False,
                reason="baseline initialized",
                current_value_usd=current,
                initialize_baseline=True,
                restart_timer=setting.strategy == TakeProfitStrategy.SCHEDULED_INTERVAL,
            )

        if setting.strategy == TakeProfitStrategy.PERCENTAGE_THRESHOLD:
            if gain_pct is None:
                return TakeProfitDecision(trigger=False, reason="zero baseline", current_value_usd=current)
            if gain_pct >= setting.threshold_pct or (force and current > baseline):
                return self._triggered(setting, current, gain_pct, f"gain {gain_pct:.2f}% >= {setting.threshold_pct}%")
            return TakeProfitDecision(
                trigger=False,
                reason=f"gain {gain_pct:.2f}% below {setting.threshold_pct}%",
                current_value_usd=current,
                gain_pct=gain_pct,
            )

        # Scheduled interval
        if setting.last_execution_at is None:
            return TakeProfitDecision(trigger=False, reason="timer started", current_value_usd=current,
                                      gain_pct=gain_pct, restart_timer=True)
        elapsed = now - setting.last_execution_at
        if elapsed < setting.interval and not force:
            return TakeProfitDecision(trigger=False, reason="interval not elapsed", current_value_usd=current,
                                      gain_pct=gain_pct)
        if current <= baseline:
            logger.info(
                f"Vault {vault.id}: take-profit interval elapsed but value ${current} <= baseline ${baseline}; "
                "restarting timer"
            )
            return TakeProfitDecision(trigger=False, reason="no gain to realize", current_value_usd=current,
                                      gain_pct=gain_pct, restart_timer=True)
        return self._triggered(setting, current, gain_pct, "interval elapsed")

    @staticmethod
    def _triggered(setting: TakeProfitSetting, current: Decimal, gain_pct: Optional[Decimal],
                   reason: str) -> TakeProfitDecision:
        amount = (current * setting.percentage_to_sell / 100).quantize(USD_QUANTUM, rounding=ROUND_HALF_EVEN)
        return TakeProfitDecision(
            trigger=amount > 0,
            amount_to_realize=amount,
            reason=reason if amount > 0 else "nothing to realize",
            current_value_usd=current,
            gain_pct=gain_pct,
        )

    @staticmethod
    def apply_success(setting: TakeProfitSetting, decision: TakeProfitDecision, realized: Decimal,
                      now: datetime) -> TakeProfitSetting:
        """Setting after a completed realization: baseline = current - realized."""
        return setting.with_updates(
            baseline_value_usd=decision.current_value_usd - realized,
            last_execution_at=now,
        )

    @staticmethod
    def apply_bookkeeping(setting: TakeProfitSetting, decision: TakeProfitDecision,
                          now: datetime) -> Optional[TakeProfitSetting]:
        """Setting after a non-triggering decision, or None when nothing changes."""
        updates = {}
        if decision.initialize_baseline:
            updates["baseline_value_usd"] = decision.current_value_usd
        if decision.restart_timer:
            updates["last_execution_at"] = now
        return setting.with_updates(**updates) if updates else None

    @staticmethod
    def realization_instructions(vault: Vault, valuation: ValuationResult,
                                 amount: Decimal) -> List[RebalanceInstruction]:
        """
        Sell `amount` USD pro-rata by value from every non-stable asset into
        the vault's stable asset. Capped at the non-stable value held.
        """
        sources = sorted(
            (a for a in valuation.assets if a.asset != vault.stable_asset and a.value_usd > 0),
            key=lambda a: a.asset,
        )
        pool = sum((a.value_usd for a in sources), Decimal("0"))
        if pool <= 0 or amount <= 0:
            return []
        amount = min(amount, pool)

        instructions: List[RebalanceInstruction] = []
        remaining = amount
        for index, item in enumerate(sources):
            if index == len(sources) - 1:
                part = remaining
            else:
                part = (amount * item.value_usd / pool).quantize(USD_QUANTUM, rounding=ROUND_HALF_EVEN)
                remaining -= part
            if part <= 0:
                continue
            source_amount = None
            if item.price > 0:
                source_amount = (part / item.price).quantize(UNITS_QUANTUM, rounding=ROUND_HALF_EVEN)
            instructions.append(
                RebalanceInstruction(
                    sequence=len(instructions),
                    source_asset=item.asset,
                    destination_asset=vault.stable_asset,
                    amount_bp=share_to_bp(part, valuation.total_value_usd),
                    amount_usd=part,
                    source_amount=source_amount,
                )
            )
        return instructions
