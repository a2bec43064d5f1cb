"""
Vault Engine Core: Vault Cycle State Machine

Per-vault lifecycle within one scheduler cycle.

States: IDLE → EVALUATING → (NO_ACTION_NEEDED | PLANNING → EXECUTING → RECORDING) → IDLE
        any non-idle state → FAILED → IDLE

FAILED is cycle-scoped: it is never persisted as a vault-level fault.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


class VaultCycleStatus(Enum):
    """Vault cycle states"""
    IDLE = "idle"
    EVALUATING = "evaluating"
    NO_ACTION_NEEDED = "no_action_needed"
    PLANNING = "planning"
    EXECUTING = "executing"
    RECORDING = "recording"
    FAILED = "failed"


@dataclass
class VaultCycleState:
    """Current cycle state for one vault, with transition timestamps."""
    vault_id: str
    status: VaultCycleStatus = VaultCycleStatus.IDLE
    entered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cycles_started: int = 0
    last_error: Optional[str] = None
    transitions: List[Dict[str, Any]] = field(default_factory=list)

    def is_active(self) -> bool:
        return self.status not in {VaultCycleStatus.IDLE, VaultCycleStatus.NO_ACTION_NEEDED, VaultCycleStatus.FAILED}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_id": self.vault_id,
            "status": self.status.value,
            "entered_at": self.entered_at.isoformat(),
            "cycles_started": self.cycles_started,
            "last_error": self.last_error,
        }


class VaultCycleStateMachine:
    """
    Tracks and validates per-vault cycle transitions.

    Thread-safe: vault tasks run on a worker pool and transition their own
    vault concurrently.
    """

    VALID_TRANSITIONS = {
        VaultCycleStatus.IDLE: {VaultCycleStatus.EVALUATING},
        VaultCycleStatus.EVALUATING: {
            VaultCycleStatus.NO_ACTION_NEEDED,
            VaultCycleStatus.PLANNING,
            VaultCycleStatus.FAILED,
        },
        VaultCycleStatus.NO_ACTION_NEEDED: {VaultCycleStatus.IDLE, VaultCycleStatus.EVALUATING},
        VaultCycleStatus.PLANNING: {
            VaultCycleStatus.EXECUTING,
            VaultCycleStatus.NO_ACTION_NEEDED,
            VaultCycleStatus.FAILED,
        },
        VaultCycleStatus.EXECUTING: {VaultCycleStatus.RECORDING, VaultCycleStatus.FAILED},
        VaultCycleStatus.RECORDING: {VaultCycleStatus.IDLE, VaultCycleStatus.EVALUATING, VaultCycleStatus.FAILED},
        VaultCycleStatus.FAILED: {VaultCycleStatus.IDLE},
    }

    MAX_TRANSITION_LOG = 50

    def __init__(self):
        self._states: Dict[str, VaultCycleState] = {}
        self._lock = Lock()

    def get(self, vault_id: str) -> VaultCycleState:
        with self._lock:
            state = self._states.get(vault_id)
            if state is None:
                state = VaultCycleState(vault_id=vault_id)
                self._states[vault_id] = state
            return state

    def transition(self, vault_id: str, new_status: VaultCycleStatus, error: Optional[str] = None) -> bool:
        """
        Move a vault to new_status.

        Returns:
            True if the transition was valid and applied, False otherwise
        """
        state = self.get(vault_id)
        with self._lock:
            current = state.status
            if new_status not in self.VALID_TRANSITIONS.get(current, set()):
                logger.warning(
                    f"Invalid cycle transition for vault {vault_id}: {current.value} → {new_status.value}"
                )
                return False

            now = datetime.now(timezone.utc)
            state.status = new_status
            state.entered_at = now
            if new_status == VaultCycleStatus.EVALUATING:
                state.cycles_started += 1
                state.last_error = None
            elif new_status == VaultCycleStatus.FAILED:
                state.last_error = error
            state.transitions.append({"from": current.value, "to": new_status.value, "at": now.isoformat()})
            if len(state.transitions) > self.MAX_TRANSITION_LOG:
                del state.transitions[: -self.MAX_TRANSITION_LOG]

        logger.debug(f"Vault {vault_id} cycle: {current.value} → {new_status.value}")
        return True

    def finish(self, vault_id: str) -> None:
        """Return a vault to IDLE from whichever terminal-for-this-cycle state it reached."""
        state = self.get(vault_id)
        if state.status in {VaultCycleStatus.NO_ACTION_NEEDED, VaultCycleStatus.RECORDING, VaultCycleStatus.FAILED}:
            self.transition(vault_id, VaultCycleStatus.IDLE)
        elif state.status != VaultCycleStatus.IDLE:
            self.transition(vault_id, VaultCycleStatus.FAILED, error="cycle ended early")
            self.transition(vault_id, VaultCycleStatus.IDLE)

    def get_active(self) -> List[VaultCycleState]:
        with self._lock:
            return [s for s in self._states.values() if s.is_active()]

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            counts: Dict[str, int] = {}
            for state in self._states.values():
                counts[state.status.value] = counts.get(state.status.value, 0) + 1
            return {"total_vaults": len(self._states), "by_status": counts}
