"""
Vault and swap-service stubs for scheduler tests.

Usage:
    vault = add_vault(store, "v1", holdings={"BTC": 6, "ETH": 4})
    executor = FlakySwapExecutor(prices, fail_on_sequence={1})
"""

import threading
from decimal import Decimal
from typing import Dict, Iterable, Optional

from core.exceptions import SwapExecutionFailed
from core.models import Allocation, RebalanceInstruction, SwapResult, Vault
from core.swap import SimulatedSwapExecutor


def add_vault(store, vault_id: str = "v1", holdings: Optional[Dict[str, object]] = None,
              targets: Optional[Dict[str, object]] = None, **vault_fields) -> Vault:
    """
    Add a vault with allocations.

    holdings maps asset -> amount held (None for unknown); targets maps
    asset -> percentage and defaults to an equal split.
    """
    holdings = holdings if holdings is not None else {"BTC": 6, "ETH": 4}
    if targets is None:
        targets = {asset: Decimal(100) / len(holdings) for asset in holdings}
    vault = store.add_vault(Vault(id=vault_id, owner="0xowner", **vault_fields))
    store.set_allocations(vault_id, [
        Allocation.from_percentage(vault_id, asset, targets[asset], amount)
        for asset, amount in holdings.items()
    ])
    return vault


class FlakySwapExecutor(SimulatedSwapExecutor):
    """Fails execute() for the given instruction sequences, or for every call until healed."""

    def __init__(self, price_source, fail_on_sequence: Iterable[int] = (), fail_all: bool = False):
        super().__init__(price_source)
        self.fail_on_sequence = set(fail_on_sequence)
        self.fail_all = fail_all
        self.calls = []

    def execute(self, instruction: RebalanceInstruction) -> SwapResult:
        self.calls.append(instruction)
        if self.fail_all or instruction.sequence in self.fail_on_sequence:
            raise SwapExecutionFailed(instruction, f"stub failure on instruction {instruction.sequence}")
        return super().execute(instruction)

    def heal(self) -> None:
        self.fail_on_sequence.clear()
        self.fail_all = False


class HangingSwapExecutor(SimulatedSwapExecutor):
    """execute() blocks until release() is called (or the hold times out)."""

    def __init__(self, price_source, hold_seconds: float = 5.0):
        super().__init__(price_source)
        self.hold_seconds = hold_seconds
        self.started = threading.Event()
        self._release = threading.Event()

    def execute(self, instruction: RebalanceInstruction) -> SwapResult:
        self.started.set()
        self._release.wait(self.hold_seconds)
        return super().execute(instruction)

    def release(self) -> None:
        self._release.set()
