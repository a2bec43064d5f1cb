"""
Vault Engine Runner: Main Loop

Hosts the scheduler: a single timer-driven control loop that ticks at a
fixed cadence, independent of per-vault cadences.

Flow per tick:
1. Invalidate the cycle price cache
2. Evaluate every vault concurrently (bounded worker pool, per-vault lease)
3. Rebalance where drift or cadence demands it, then take-profit
4. Record metrics, audit the cycle, log a latency summary
"""

import hashlib
import logging
import signal
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.audit_log import AuditLogger
from core.events import EventEmitter
from core.exceptions import VaultNotFound
from core.models import Allocation, RebalanceCadence, TakeProfitSetting, TakeProfitStrategy, Vault
from core.price_feed import CoinGeckoPriceSource, PriceSource, StaticPriceSource
from core.scheduler import TickResult, VaultScheduler
from core.swap import SimulatedSwapExecutor, SwapExecutor
from infra.lease import VaultLeaseManager
from infra.metrics import CycleStats, MetricsRecorder
from infra.rate_limiter import RateLimiter
from infra.vault_store import VaultStore, build_store

logger = logging.getLogger(__name__)


class VaultEngineLoop:
    """
    Main engine loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Wire collaborators (store, price source, swap executor)
    - Run periodic cycles
    - Output structured summaries
    - Stop gracefully on SIGINT/SIGTERM
    """

    def __init__(
        self,
        config_dir: str = "config",
        store: Optional[VaultStore] = None,
        price_source: Optional[PriceSource] = None,
        swap_executor: Optional[SwapExecutor] = None,
        install_signal_handlers: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_config
        validation_errors = validate_config(str(self.config_dir / "app.yaml"))
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.config_hash = self._compute_config_hash()

        self.mode = (self.app_config.get("app") or {}).get("mode", "DRY_RUN").upper()
        loop_cfg = self.app_config.get("loop") or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 60.0))

        self._configure_logging(self.app_config.get("logging") or {})
        logger.info(f"Starting vault engine in mode={self.mode} (config hash {self.config_hash})")

        price_cfg = self.app_config.get("price_feed") or {}
        swap_cfg = self.app_config.get("swap") or {}
        self.rate_limiter = RateLimiter({
            "prices": float(price_cfg.get("requests_per_second", 5.0)),
            "swaps": float(swap_cfg.get("requests_per_second", 2.0)),
        })

        store_cfg = self.app_config.get("store") or {}
        self.store = store or build_store(store_cfg.get("backend", "memory"), store_cfg.get("path"))
        self.price_source = price_source or self._build_price_source(price_cfg)
        self.swap_executor = swap_executor or self._build_swap_executor(swap_cfg)
        self._seed_vaults()

        monitoring_cfg = self.app_config.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        log_cfg = self.app_config.get("logging") or {}
        self.audit = AuditLogger(log_cfg.get("audit_file")) if log_cfg.get("audit_file") else None
        self.events = EventEmitter()
        if self.audit:
            self.events.subscribe(self.audit)
        self.events.subscribe(self.metrics)

        planner_cfg = self.app_config.get("planner") or {}
        tp_cfg = self.app_config.get("take_profit") or {}
        self.scheduler = VaultScheduler(
            store=self.store,
            price_source=self.price_source,
            swap_executor=self.swap_executor,
            lease_manager=VaultLeaseManager(ttl_seconds=float(loop_cfg.get("lease_ttl_seconds", 300.0))),
            events=self.events,
            metrics=self.metrics,
            max_workers=int(loop_cfg.get("max_workers", 4)),
            instruction_timeout_seconds=float(loop_cfg.get("instruction_timeout_seconds", 30.0)),
            allow_estimated=bool(planner_cfg.get("allow_estimated_valuations", True)),
            max_price_impact_pct=planner_cfg.get("max_price_impact_pct"),
            take_profit_enabled=bool(tp_cfg.get("enabled", True)),
            price_cache_ttl_seconds=float(price_cfg.get("cache_ttl_seconds", 0.0)),
        )

        self._running = True
        self._wake = threading.Event()
        self._stage_timings: Dict[str, float] = {}
        self.cycles_run = 0

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized VaultEngineLoop in {self.mode} mode")

    # Setup

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _compute_config_hash(self) -> str:
        """First 16 hex chars of the SHA256 of app.yaml, for drift detection in audit logs."""
        hasher = hashlib.sha256()
        with open(self.config_dir / "app.yaml", "rb") as f:
            hasher.update(f.read())
        return hasher.hexdigest()[:16]

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        handlers = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _build_price_source(self, price_cfg: Dict[str, Any]) -> PriceSource:
        if price_cfg.get("provider", "static") == "coingecko":
            return CoinGeckoPriceSource(
                base_url=price_cfg.get("base_url", "https://api.coingecko.com/api/v3"),
                rate_limiter=self.rate_limiter,
            )
        return StaticPriceSource(price_cfg.get("static_prices") or {})

    def _build_swap_executor(self, swap_cfg: Dict[str, Any]) -> SwapExecutor:
        if self.mode == "LIVE":
            raise ValueError("LIVE mode requires an external swap executor; none was provided")
        return SimulatedSwapExecutor(
            self.price_source,
            slippage_tolerance_pct=str(swap_cfg.get("slippage_tolerance_pct", 0.5)),
            base_fee_usd=str(swap_cfg.get("base_fee_usd", 5.0)),
            rate_limiter=self.rate_limiter,
        )

    def _seed_vaults(self) -> None:
        """Load configured vaults into the store when absent."""
        default_stable = (self.app_config.get("take_profit") or {}).get("default_stable_asset", "USDC")
        for seed in self.app_config.get("seed_vaults") or []:
            try:
                self.store.get_vault(seed["id"])
                continue
            except VaultNotFound:
                pass

            vault = Vault(
                id=seed["id"],
                owner=seed["owner"],
                name=seed.get("name", ""),
                drift_threshold_bp=int(seed.get("drift_threshold_bp", 500)),
                rebalance_cadence=RebalanceCadence(seed.get("rebalance_cadence", "manual")),
                auto_rebalance=bool(seed.get("auto_rebalance", True)),
                stable_asset=seed.get("stable_asset") or default_stable,
            )
            self.store.add_vault(vault)
            self.store.set_allocations(vault.id, [
                Allocation.from_percentage(vault.id, a["asset"], a["percentage"], a.get("amount_held"))
                for a in seed.get("allocations") or []
            ])

            tp = seed.get("take_profit")
            if tp:
                strategy = TakeProfitStrategy(tp["strategy"])
                if strategy == TakeProfitStrategy.SCHEDULED_INTERVAL:
                    setting = TakeProfitSetting.scheduled(
                        vault.id, tp["interval"], tp["percentage_to_sell"],
                        baseline_value_usd=tp.get("baseline_value_usd"),
                        active=tp.get("active", True),
                    )
                else:
                    setting = TakeProfitSetting(
                        vault_id=vault.id,
                        strategy=strategy,
                        threshold_pct=tp.get("threshold_pct"),
                        percentage_to_sell=tp["percentage_to_sell"],
                        baseline_value_usd=tp.get("baseline_value_usd"),
                        active=tp.get("active", True),
                    )
                self.store.create_take_profit_setting(setting)
            logger.info(f"Seeded vault {vault.id} ({len(seed.get('allocations') or [])} allocations)")

    # Lifecycle

    def _handle_stop(self, *_):
        """Stop after the current cycle; in-flight swaps finish, nothing new starts."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
        logger.warning("=" * 80)
        self._running = False
        self.scheduler.request_stop()
        self._wake.set()

    def close(self) -> None:
        self.scheduler.close()

    def run_cycle(self) -> Optional[TickResult]:
        """Run one scheduler tick with metrics, audit and summary logging."""
        started_at = datetime.now(timezone.utc)
        self._stage_timings.clear()
        try:
            with self._stage_timer("tick"):
                tick = self.scheduler.tick(now=started_at)
        except Exception as e:
            logger.error(f"Cycle failed: {e}", exc_info=True)
            self._record_cycle_metrics(status="error", tick=None, started_at=started_at)
            return None

        self.cycles_run += 1
        for stage, seconds in tick.stage_durations.items():
            self._stage_timings[stage] = seconds
            self.metrics.record_stage_duration(stage, seconds)

        self._record_cycle_metrics(status=tick.status, tick=tick, started_at=started_at)
        self._audit_cycle(ts=started_at, status=tick.status, tick=tick)
        return tick

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run cycles continuously with time-aware sleep.

        Args:
            interval_seconds: Seconds between cycle starts
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        configured_interval = max(configured_interval, 1.0)
        logger.info(f"Starting continuous loop (interval={configured_interval}s)")

        while self._running:
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start

            utilization = elapsed / configured_interval
            if utilization > 0.7:
                logger.warning(f"High cycle utilization ({utilization:.1%})")
            sleep_for = max(0.0, configured_interval - elapsed)
            logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s (util: {utilization:.1%})")
            self._wake.wait(sleep_for)

        self.close()
        logger.info("Vault engine loop stopped cleanly.")

    # Telemetry

    @contextmanager
    def _stage_timer(self, stage: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = max(time.perf_counter() - start, 0.0)
            self._stage_timings[stage] = duration
            self.metrics.record_stage_duration(stage, duration)

    def _record_cycle_metrics(self, *, status: str, tick: Optional[TickResult], started_at: datetime) -> None:
        duration = max((datetime.now(timezone.utc) - started_at).total_seconds(), 0.0)
        counts = tick.counts() if tick else {}
        stats = CycleStats(
            status=status,
            vaults=len(tick.results) if tick else 0,
            actioned=counts.get("completed", 0) + counts.get("partial", 0),
            failed=counts.get("failed", 0),
            skipped=counts.get("skipped", 0),
            duration_seconds=duration,
        )
        self.metrics.observe_cycle(stats)
        self._log_cycle_summary(stats)

    def _log_cycle_summary(self, stats: CycleStats) -> None:
        ordered = ", ".join(f"{stage}={self._stage_timings[stage]:.3f}s" for stage in sorted(self._stage_timings))
        logger.info(
            "Cycle summary [%s]: vaults=%d actioned=%d failed=%d skipped=%d total=%.3fs | %s",
            stats.status,
            stats.vaults,
            stats.actioned,
            stats.failed,
            stats.skipped,
            stats.duration_seconds,
            ordered or "no stages",
        )

    def _audit_cycle(self, *, ts: datetime, status: str, tick: TickResult) -> None:
        if not self.audit:
            return
        self.audit.log_cycle(
            ts=ts,
            mode=self.mode,
            status=status,
            outcomes={vault_id: r.status.value for vault_id, r in tick.results.items()},
            stage_latencies=dict(self._stage_timings),
            config_hash=self.config_hash,
            errors={vault_id: r.reason for vault_id, r in tick.results.items()
                    if r.status.value == "failed" and r.reason},
        )


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Vault rebalance and take-profit engine")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: config)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--rebalance", metavar="VAULT_ID", help="Rebalance one vault now and exit")
    parser.add_argument("--force", action="store_true", help="With --rebalance: plan even without a trigger")
    parser.add_argument("--take-profit", metavar="VAULT_ID", help="Execute take-profit for one vault and exit")
    parser.add_argument("--retry", metavar="HISTORY_ID", help="Retry a failed or partial history entry and exit")

    args = parser.parse_args()

    # Logging configured in __init__
    loop = VaultEngineLoop(config_dir=args.config_dir)

    try:
        if args.rebalance:
            result = loop.scheduler.rebalance_vault(args.rebalance, force=args.force)
            logger.info(f"Rebalance {args.rebalance}: {result.status.value} {result.reason or ''}".rstrip())
        elif args.take_profit:
            result = loop.scheduler.execute_take_profit(args.take_profit)
            logger.info(f"Take-profit {args.take_profit}: {result.status.value} {result.reason or ''}".rstrip())
        elif args.retry:
            outcome = loop.scheduler.retry(args.retry)
            logger.info(
                f"Retry {args.retry}: {outcome.status} "
                f"(entries={outcome.result_history_ids}, replayed={outcome.replayed})"
            )
        elif args.once:
            loop.run_cycle()
        else:
            loop.run_forever(interval_seconds=args.interval)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
