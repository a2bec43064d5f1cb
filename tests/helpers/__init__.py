"""Test helpers for the vault engine test suite"""

from tests.helpers.vault_stubs import (
    FlakySwapExecutor,
    HangingSwapExecutor,
    add_vault,
)

__all__ = [
    "FlakySwapExecutor",
    "HangingSwapExecutor",
    "add_vault",
]
