"""
Vault Engine Core: Rebalance Planner

Turns one valuation snapshot into an ordered list of swap instructions.

Greedy minimal pairing:
1. Every over-allocated asset (current > target) and every under-allocated
   asset (current < target) is a candidate, each side sorted by residual
   drift descending, ties broken by symbol
2. Pair the most-over with the most-under, move min(over, under) bp of value
3. Decrement both residuals; an asset whose residual reaches zero leaves
4. Repeat while any residual exceeds the threshold and both sides remain

Assets within threshold are never traded on their own, but they serve as
counterparts once the other side holds an asset beyond threshold. Drift
spread thinly over several assets is therefore still resolved.

The plan is computed once against the pre-trade snapshot and never
recomputed mid-execution.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Dict, List, Sequence, Tuple

from core.exceptions import EstimatedValuationRefused
from core.models import (
    Allocation,
    RebalanceInstruction,
    ValuationResult,
    Vault,
    validate_allocation_set,
)

logger = logging.getLogger(__name__)

USD_QUANTUM = Decimal("0.01")
UNITS_QUANTUM = Decimal("0.00000001")

BASE_GAS_UNITS = 1_000_000
GAS_UNITS_PER_SWAP = 2_500_000


@dataclass
class RebalancePlan:
    vault_id: str
    instructions: List[RebalanceInstruction] = field(default_factory=list)
    partial: bool = False
    total_value_usd: Decimal = Decimal("0")
    estimated: bool = False
    residual_drift_bp: Dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.instructions

    @property
    def estimated_gas_units(self) -> int:
        return BASE_GAS_UNITS + GAS_UNITS_PER_SWAP * len(self.instructions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_id": self.vault_id,
            "instructions": [i.to_dict() for i in self.instructions],
            "partial": self.partial,
            "total_value_usd": str(self.total_value_usd),
            "estimated": self.estimated,
            "estimated_gas_units": self.estimated_gas_units,
            "residual_drift_bp": dict(self.residual_drift_bp),
        }


def _ranked(side: List[Tuple[str, int]]) -> List[Tuple[str, int]]:
    return sorted(side, key=lambda item: (-item[1], item[0]))


def _exceeds(residuals: List[Tuple[str, int]], threshold: int) -> bool:
    return any(bp > threshold for _, bp in residuals)


class RebalancePlanner:
    """
    Args:
        allow_estimated: plan against valuations containing estimated holdings
    """

    def __init__(self, allow_estimated: bool = True):
        self.allow_estimated = allow_estimated

    def plan(self, vault: Vault, allocations: Sequence[Allocation], valuation: ValuationResult) -> RebalancePlan:
        validate_allocation_set(vault.id, allocations)
        if valuation.estimated and not self.allow_estimated:
            raise EstimatedValuationRefused(vault.id)

        plan = RebalancePlan(
            vault_id=vault.id,
            total_value_usd=valuation.total_value_usd,
            estimated=valuation.estimated,
        )
        if valuation.is_empty:
            return plan

        threshold = vault.drift_threshold_bp
        over: List[Tuple[str, int]] = []
        under: List[Tuple[str, int]] = []
        for item in valuation.assets:
            signed = item.signed_drift_bp
            if signed > 0:
                over.append((item.asset, signed))
            elif signed < 0:
                under.append((item.asset, -signed))

        sequence = 0
        while over and under and _exceeds(over + under, threshold):
            over = _ranked(over)
            under = _ranked(under)
            (source, over_bp), (dest, under_bp) = over[0], under[0]
            amount_bp = min(over_bp, under_bp)

            plan.instructions.append(self._instruction(sequence, source, dest, amount_bp, valuation))
            sequence += 1

            over[0] = (source, over_bp - amount_bp)
            under[0] = (dest, under_bp - amount_bp)
            over = [entry for entry in over if entry[1] > 0]
            under = [entry for entry in under if entry[1] > 0]

        plan.residual_drift_bp = {asset: bp for asset, bp in over + under if bp > threshold}
        plan.partial = bool(plan.residual_drift_bp)
        if plan.partial:
            logger.warning(
                f"Vault {vault.id}: plan cannot fully resolve drift, residual {plan.residual_drift_bp}"
            )

        logger.info(
            f"Vault {vault.id}: planned {len(plan.instructions)} swap(s) "
            f"(partial={plan.partial}, estimated={plan.estimated})"
        )
        return plan

    @staticmethod
    def _instruction(
        sequence: int,
        source: str,
        dest: str,
        amount_bp: int,
        valuation: ValuationResult,
    ) -> RebalanceInstruction:
        amount_usd = (valuation.total_value_usd * amount_bp / 10000).quantize(USD_QUANTUM, rounding=ROUND_HALF_EVEN)
        source_amount = None
        source_val = valuation.get(source)
        if source_val is not None and source_val.price > 0:
            source_amount = (amount_usd / source_val.price).quantize(UNITS_QUANTUM, rounding=ROUND_HALF_EVEN)
        return RebalanceInstruction(
            sequence=sequence,
            source_asset=source,
            destination_asset=dest,
            amount_bp=amount_bp,
            amount_usd=amount_usd,
            source_amount=source_amount,
        )
