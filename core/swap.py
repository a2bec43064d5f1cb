"""
Vault Engine Core: Swap Execution

SwapExecutor is the engine's view of the external swap service: a quote and
an execution per instruction, with a fixed result shape. SimulatedSwapExecutor
backs DRY_RUN mode.
"""

import hashlib
import itertools
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_EVEN
from threading import Lock
from typing import Iterable, Optional

from core.exceptions import MissingPrice, PriceSourceError, SwapExecutionFailed, SwapQuoteFailed
from core.models import RebalanceInstruction, SwapQuote, SwapResult, to_decimal
from core.price_feed import PriceSource
from infra.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MAX_PRICE_IMPACT_PCT = Decimal("5")
DEFAULT_ESTIMATED_MINUTES = 5


class SwapExecutor(ABC):

    @abstractmethod
    def quote(self, instruction: RebalanceInstruction) -> SwapQuote:
        """Raises SwapQuoteFailed when no quote can be produced."""

    @abstractmethod
    def execute(self, instruction: RebalanceInstruction) -> SwapResult:
        """Returns a completed/failed result; may raise SwapExecutionFailed."""


def simulated_price_impact_pct(value_usd: Decimal) -> Decimal:
    """Price impact grows with trade size, capped at 5%."""
    if value_usd > 10000:
        impact = Decimal("0.05") + value_usd / Decimal("1000000") * Decimal("0.5")
    else:
        impact = Decimal("0.01") + value_usd / Decimal("100000") * Decimal("0.1")
    return min(impact, MAX_PRICE_IMPACT_PCT)


def simulated_fee(base_fee: Decimal, value_usd: Decimal) -> Decimal:
    """Base fee scaled sub-linearly with trade size."""
    scale = max(Decimal("1"), value_usd / 1000).log10()
    return (base_fee * (1 + scale * Decimal("0.5"))).quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)


class SimulatedSwapExecutor(SwapExecutor):
    """
    Paper swap service for DRY_RUN.

    Quotes from the price source with a slippage haircut, size-based price
    impact and a scaled fee. Executions always succeed unless the source asset
    is listed in fail_assets, and return a deterministic sim-<hash> reference.
    """

    def __init__(
        self,
        price_source: PriceSource,
        slippage_tolerance_pct: object = "0.5",
        base_fee_usd: object = "5",
        rate_limiter: Optional[RateLimiter] = None,
        fail_assets: Optional[Iterable[str]] = None,
    ):
        self.price_source = price_source
        self.slippage_tolerance_pct = to_decimal(slippage_tolerance_pct)
        self.base_fee_usd = to_decimal(base_fee_usd)
        self.rate_limiter = rate_limiter
        self.fail_assets = set(fail_assets or ())
        self._counter = itertools.count(1)
        self._lock = Lock()
        self.executed = []

    def quote(self, instruction: RebalanceInstruction) -> SwapQuote:
        self._throttle("quote")
        try:
            to_price = self.price_source.get_price(instruction.destination_asset).current
        except (MissingPrice, PriceSourceError) as e:
            raise SwapQuoteFailed(instruction, f"no price for {instruction.destination_asset}: {e}") from e
        if to_price <= 0:
            raise SwapQuoteFailed(instruction, f"non-positive price for {instruction.destination_asset}")

        value = instruction.amount_usd
        raw_output = value / to_price
        output = raw_output * (1 - self.slippage_tolerance_pct / 100)
        return SwapQuote(
            output_amount=output.quantize(Decimal("0.00000001"), rounding=ROUND_HALF_EVEN),
            fee=simulated_fee(self.base_fee_usd, value),
            price_impact_pct=simulated_price_impact_pct(value),
            estimated_time_minutes=DEFAULT_ESTIMATED_MINUTES,
        )

    def execute(self, instruction: RebalanceInstruction) -> SwapResult:
        self._throttle("execute")
        if instruction.source_asset in self.fail_assets:
            raise SwapExecutionFailed(instruction, f"simulated failure selling {instruction.source_asset}")

        with self._lock:
            nonce = next(self._counter)
            self.executed.append(instruction)
        digest = hashlib.sha256(
            json.dumps({"instruction": instruction.to_dict(), "nonce": nonce}, sort_keys=True).encode()
        ).hexdigest()
        tx_ref = f"sim-{digest[:16]}"
        logger.info(
            f"Simulated swap {instruction.source_asset} → {instruction.destination_asset} "
            f"${instruction.amount_usd} ({tx_ref})"
        )
        return SwapResult(status="completed", tx_ref=tx_ref)

    def _throttle(self, endpoint: str) -> None:
        if self.rate_limiter:
            self.rate_limiter.acquire("swaps", endpoint=endpoint)
