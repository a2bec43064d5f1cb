"""
Vault Engine Core: Drift Detector

Decides whether a vault needs rebalancing. Two independent triggers, either
sufficient:

- drift: any asset with |current_bp - target_bp| > threshold (strict)
- time:  cadence != manual and now - last_rebalanced_at >= cadence duration

Pure function of its inputs: the same (vault, valuation, now) always yields
the same decision.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.models import RebalanceCadence, ValuationResult, Vault, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftReason:
    kind: str  # "drift" | "time"
    asset: Optional[str] = None
    drift_bp: Optional[int] = None
    threshold_bp: Optional[int] = None
    elapsed_seconds: Optional[int] = None
    cadence: Optional[str] = None

    def describe(self) -> str:
        if self.kind == "drift":
            return f"{self.asset} drift {self.drift_bp}bp > {self.threshold_bp}bp"
        if self.elapsed_seconds is None:
            return f"{self.cadence} cadence due (never rebalanced)"
        return f"{self.cadence} cadence due ({self.elapsed_seconds}s since last rebalance)"

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class DriftEvaluation:
    needs_rebalance: bool
    reasons: List[DriftReason] = field(default_factory=list)

    @property
    def drift_triggered(self) -> bool:
        return any(r.kind == "drift" for r in self.reasons)

    @property
    def time_triggered(self) -> bool:
        return any(r.kind == "time" for r in self.reasons)


class DriftDetector:

    def evaluate(self, vault: Vault, valuation: ValuationResult, now: Optional[datetime] = None) -> DriftEvaluation:
        if valuation.is_empty or not valuation.assets:
            return DriftEvaluation(needs_rebalance=False)

        now = now or utcnow()
        reasons: List[DriftReason] = []

        # Basis points on both sides: no float comparisons between runs
        for item in sorted(valuation.assets, key=lambda a: a.asset):
            if item.drift_bp > vault.drift_threshold_bp:
                reasons.append(
                    DriftReason(
                        kind="drift",
                        asset=item.asset,
                        drift_bp=item.drift_bp,
                        threshold_bp=vault.drift_threshold_bp,
                    )
                )

        time_reason = self._time_trigger(vault, now)
        if time_reason:
            reasons.append(time_reason)

        if reasons:
            logger.debug(f"Vault {vault.id} needs rebalance: {'; '.join(r.describe() for r in reasons)}")
        return DriftEvaluation(needs_rebalance=bool(reasons), reasons=reasons)

    @staticmethod
    def _time_trigger(vault: Vault, now: datetime) -> Optional[DriftReason]:
        if vault.rebalance_cadence == RebalanceCadence.MANUAL:
            return None
        duration = vault.rebalance_cadence.duration
        if vault.last_rebalanced_at is None:
            return DriftReason(kind="time", cadence=vault.rebalance_cadence.value)
        elapsed = now - vault.last_rebalanced_at
        if elapsed >= duration:
            return DriftReason(
                kind="time",
                cadence=vault.rebalance_cadence.value,
                elapsed_seconds=int(elapsed.total_seconds()),
            )
        return None
