"""
Vault Engine Core: Valuation Calculator

Converts a vault's holdings and the cycle's price snapshot into per-asset USD
values and basis-point shares of the total.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from core.exceptions import MissingPrice
from core.models import (
    Allocation,
    AssetValuation,
    EmptyPortfolio,
    PriceSnapshot,
    ValuationResult,
    Vault,
    share_to_bp,
    utcnow,
)

logger = logging.getLogger(__name__)


class ValuationCalculator:
    """
    Values a vault against one price snapshot.

    Holdings come from Allocation.amount_held. When some holdings are unknown
    their value is estimated as target share of the total, where the total is
    inferred from the known holdings or, failing that, from reference_value
    (typically the take-profit baseline). Estimated results carry
    estimated=True so the planner can refuse to trade on them.
    """

    def valuate(
        self,
        vault: Vault,
        allocations: Sequence[Allocation],
        prices: PriceSnapshot,
        reference_value: Optional[Decimal] = None,
    ) -> ValuationResult:
        now = utcnow()
        if not allocations:
            return EmptyPortfolio(vault_id=vault.id, total_value_usd=Decimal("0"), assets=[], valued_at=now)

        # Every price must be present before anything is produced
        for alloc in allocations:
            if alloc.asset not in prices:
                raise MissingPrice(alloc.asset)

        known = [a for a in allocations if a.amount_held is not None]
        unknown = [a for a in allocations if a.amount_held is None]

        values = {a.asset: a.amount_held * prices[a.asset].current for a in known}
        known_total = sum(values.values(), Decimal("0"))

        estimated = bool(unknown)
        if estimated:
            total = self._estimate_total(known, known_total, reference_value)
            for alloc in unknown:
                values[alloc.asset] = total * alloc.target_bp / 10000
            logger.debug(
                f"Vault {vault.id}: estimated {len(unknown)} holding(s) "
                f"against inferred total ${total}"
            )
        else:
            total = known_total

        if total <= 0:
            return EmptyPortfolio(
                vault_id=vault.id,
                total_value_usd=Decimal("0"),
                assets=[],
                estimated=estimated,
                valued_at=now,
            )

        assets: List[AssetValuation] = []
        for alloc in allocations:
            value = values[alloc.asset]
            assets.append(
                AssetValuation(
                    asset=alloc.asset,
                    price=prices[alloc.asset].current,
                    value_usd=value,
                    current_bp=share_to_bp(value, total),
                    target_bp=alloc.target_bp,
                    estimated=alloc.amount_held is None,
                )
            )

        return ValuationResult(
            vault_id=vault.id,
            total_value_usd=total,
            assets=assets,
            estimated=estimated,
            valued_at=now,
        )

    @staticmethod
    def _estimate_total(
        known: Sequence[Allocation],
        known_total: Decimal,
        reference_value: Optional[Decimal],
    ) -> Decimal:
        known_target_bp = sum(a.target_bp for a in known)
        if known_total > 0 and known_target_bp > 0:
            return known_total * 10000 / known_target_bp
        if reference_value is not None and reference_value > 0:
            return reference_value
        return known_total
