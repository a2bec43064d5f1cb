"""Shared exception types for the vault decision engine."""

from typing import Any, Optional


class VaultEngineError(RuntimeError):
    """Base class for every error raised by the engine."""


class MissingPrice(VaultEngineError):
    """Raised when a held asset has no price in the cycle's price snapshot."""

    def __init__(self, symbol: str):
        super().__init__(f"missing price for {symbol}")
        self.symbol = symbol


class PriceSourceError(VaultEngineError):
    """Raised when the price source cannot produce a price for a symbol."""

    def __init__(self, symbol: str, original: Optional[Exception] = None):
        super().__init__(f"price source failed for {symbol}: {original}")
        self.symbol = symbol
        self.original = original


class InvalidAllocationSet(VaultEngineError):
    """Raised when a vault's allocations violate the 100% / uniqueness invariant."""

    def __init__(self, vault_id: str, reason: str):
        super().__init__(f"invalid allocation set for vault {vault_id}: {reason}")
        self.vault_id = vault_id
        self.reason = reason


class EstimatedValuationRefused(VaultEngineError):
    """Raised when planning is asked to trade on estimated holdings and config forbids it."""

    def __init__(self, vault_id: str):
        super().__init__(f"refusing to plan vault {vault_id} against estimated holdings")
        self.vault_id = vault_id


class SwapError(VaultEngineError):
    """Base for swap failures. Carries the instruction that failed."""

    def __init__(self, instruction: Any, reason: str):
        super().__init__(reason)
        self.instruction = instruction
        self.reason = reason


class SwapQuoteFailed(SwapError):
    pass


class SwapExecutionFailed(SwapError):
    pass


class SwapTimeout(SwapError):
    pass


class LeaseUnavailable(VaultEngineError):
    """Raised when another cycle already holds the vault's lease."""

    def __init__(self, vault_id: str):
        super().__init__(f"lease unavailable for vault {vault_id}")
        self.vault_id = vault_id


class VaultNotFound(VaultEngineError):
    def __init__(self, vault_id: str):
        super().__init__(f"vault not found: {vault_id}")
        self.vault_id = vault_id


class HistoryNotFound(VaultEngineError):
    def __init__(self, history_id: str):
        super().__init__(f"history entry not found: {history_id}")
        self.history_id = history_id


class TakeProfitSettingExists(VaultEngineError):
    def __init__(self, vault_id: str):
        super().__init__(f"vault {vault_id} already has a take-profit setting")
        self.vault_id = vault_id


class RetryNotAllowed(VaultEngineError):
    """Raised when a history entry is not in a retryable terminal state."""

    def __init__(self, history_id: str, status: str):
        super().__init__(f"history entry {history_id} with status {status} cannot be retried")
        self.history_id = history_id
        self.status = status
