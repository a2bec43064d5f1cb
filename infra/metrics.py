"""Prometheus-backed metrics hooks for the vault engine loop and executions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

from core.events import EngineEvent, EngineEventType

logger = logging.getLogger(__name__)

METRIC_PREFIX = "vault_engine_"


@dataclass
class CycleStats:
    status: str
    vaults: int
    actioned: int
    failed: int
    skipped: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Also an event subscriber: pass the recorder to EventEmitter.subscribe.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_stage_durations: Dict[str, float] = {}
        self._event_counts: Dict[str, int] = {}
        self._lease_contention = 0
        self._hung_swap_calls = 0
        # Counters below are updated from vault worker threads
        self._counts_lock = Lock()

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._stage_summary = None
            self._vault_outcomes_counter = None
            self._instructions_counter = None
            self._events_counter = None
            self._realized_counter = None
            self._lease_contention_counter = None
            self._active_vaults_gauge = None
            self._hung_swap_calls_gauge = None
            return

        self._cycle_summary = Summary(
            f"{METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full scheduler cycle",
        )
        self._cycle_counter = Counter(
            f"{METRIC_PREFIX}cycle_total",
            "Total scheduler cycles by status",
            labelnames=("status",),
        )
        self._stage_summary = Summary(
            f"{METRIC_PREFIX}stage_duration_seconds",
            "Duration of major cycle stages",
            labelnames=("stage",),
        )
        self._vault_outcomes_counter = Counter(
            f"{METRIC_PREFIX}vault_outcomes_total",
            "Per-vault cycle outcomes",
            labelnames=("kind", "status"),  # kind: rebalance, take_profit
        )
        self._instructions_counter = Counter(
            f"{METRIC_PREFIX}instructions_total",
            "Swap instructions by final status",
            labelnames=("status",),
        )
        self._events_counter = Counter(
            f"{METRIC_PREFIX}events_total",
            "Engine events emitted",
            labelnames=("event",),
        )
        self._realized_counter = Counter(
            f"{METRIC_PREFIX}take_profit_realized_usd_total",
            "Total USD value realized by take-profit",
        )
        self._lease_contention_counter = Counter(
            f"{METRIC_PREFIX}lease_contention_total",
            "Vaults skipped because their lease was held",
        )
        self._active_vaults_gauge = Gauge(
            f"{METRIC_PREFIX}vaults",
            "Vaults enumerated in the last cycle",
        )
        self._hung_swap_calls_gauge = Gauge(
            f"{METRIC_PREFIX}hung_swap_calls",
            "Swap calls still running past their instruction deadline",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        for collector in list(REGISTRY._collector_to_names):
            names = REGISTRY._collector_to_names.get(collector, set())
            if any(name.startswith(METRIC_PREFIX) for name in names):
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics exporter to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                logger.debug("Port %s in use, trying next port...", port)

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def __call__(self, event: EngineEvent) -> None:
        self.record_event(event)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()
            self._active_vaults_gauge.set(stats.vaults)
        self._last_cycle_stats = stats

    def record_stage_duration(self, stage: str, duration: float) -> None:
        self._last_stage_durations[stage] = duration
        if self._enabled:
            self._stage_summary.labels(stage=stage).observe(duration)

    def record_vault_outcome(self, kind: str, status: str) -> None:
        if self._enabled:
            self._vault_outcomes_counter.labels(kind=kind, status=status).inc()

    def record_instruction(self, status: str) -> None:
        if self._enabled:
            self._instructions_counter.labels(status=status).inc()

    def record_realized(self, amount_usd: Decimal) -> None:
        if self._enabled and amount_usd > 0:
            self._realized_counter.inc(float(amount_usd))

    def record_lease_contention(self, vault_id: str) -> None:
        with self._counts_lock:
            self._lease_contention += 1
        logger.debug(f"Lease contention on vault {vault_id}")
        if self._enabled:
            self._lease_contention_counter.inc()

    def record_hung_swap_calls(self, count: int) -> None:
        self._hung_swap_calls = count
        if self._enabled:
            self._hung_swap_calls_gauge.set(count)

    def record_event(self, event: EngineEvent) -> None:
        name = event.type.value
        with self._counts_lock:
            self._event_counts[name] = self._event_counts.get(name, 0) + 1
        if self._enabled:
            self._events_counter.labels(event=name).inc()
        if event.type == EngineEventType.TAKE_PROFIT_COMPLETED:
            realized = event.payload.get("realized_usd")
            if realized is not None:
                self.record_realized(Decimal(str(realized)))

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def stage_snapshot(self) -> Dict[str, float]:
        return dict(self._last_stage_durations)

    def event_counts(self) -> Dict[str, int]:
        with self._counts_lock:
            return dict(self._event_counts)

    @property
    def lease_contention(self) -> int:
        with self._counts_lock:
            return self._lease_contention

    @property
    def hung_swap_calls(self) -> int:
        return self._hung_swap_calls
