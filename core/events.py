"""
Vault Engine Core: Engine Events

Lifecycle events emitted by the scheduler and consumed by observability
subscribers (audit log, metrics).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from core.models import utcnow

logger = logging.getLogger(__name__)


class EngineEventType(Enum):
    CYCLE_START = "cycle-start"
    VAULT_EVALUATED = "vault-evaluated"
    DRIFT_EXCEEDED = "drift-exceeded"
    REBALANCE_TRIGGERED = "rebalance-triggered"
    REBALANCE_COMPLETED = "rebalance-completed"
    REBALANCE_FAILED = "rebalance-failed"
    TAKE_PROFIT_TRIGGERED = "take-profit-triggered"
    TAKE_PROFIT_COMPLETED = "take-profit-completed"
    TAKE_PROFIT_FAILED = "take-profit-failed"
    CYCLE_COMPLETE = "cycle-complete"


@dataclass(frozen=True)
class EngineEvent:
    type: EngineEventType
    vault_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.type.value,
            "vault_id": self.vault_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


Subscriber = Callable[[EngineEvent], None]


class EventEmitter:
    """
    Synchronous fan-out to subscribers.

    A failing subscriber is logged and skipped; it never aborts the vault
    cycle that emitted the event.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def emit(self, event_type: EngineEventType, vault_id: Optional[str] = None, **payload) -> EngineEvent:
        event = EngineEvent(type=event_type, vault_id=vault_id, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}", exc_info=True)
        return event


class EventRecorder:
    """Collects events in memory. Handy for dry runs and tests."""

    def __init__(self):
        self.events: List[EngineEvent] = []
        self._lock = Lock()

    def __call__(self, event: EngineEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EngineEventType) -> List[EngineEvent]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]
