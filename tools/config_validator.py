"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas, then runs cross-field sanity
checks. Ensures the config is correct before the engine starts.

Usage:
    from tools.config_validator import validate_config

    errors = validate_config("config/app.yaml")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$", description="Execution mode")


class LoopConfig(BaseModel):
    """Scheduler tick and worker pool"""
    interval_seconds: float = Field(default=60.0, gt=0, description="Tick cadence")
    max_workers: int = Field(default=4, ge=1, le=64, description="Vaults evaluated concurrently")
    instruction_timeout_seconds: float = Field(default=30.0, gt=0, description="Deadline per swap instruction (quote + execute)")
    lease_ttl_seconds: float = Field(default=300.0, gt=0, description="Per-vault lease TTL")


class PlannerConfig(BaseModel):
    allow_estimated_valuations: bool = Field(default=True, description="Trade on estimated holdings")
    max_price_impact_pct: Optional[float] = Field(default=None, gt=0, le=100, description="Quote impact ceiling")


class TakeProfitConfig(BaseModel):
    enabled: bool = Field(default=True)
    default_stable_asset: str = Field(default="USDC", min_length=1)


class PriceFeedConfig(BaseModel):
    provider: str = Field(default="static", pattern="^(static|coingecko)$")
    cache_ttl_seconds: float = Field(default=0.0, ge=0, description="Carry prices across ticks")
    requests_per_second: float = Field(default=5.0, gt=0)
    base_url: str = Field(default="https://api.coingecko.com/api/v3", min_length=1)
    static_prices: Dict[str, float] = Field(default_factory=dict)

    @field_validator('static_prices')
    @classmethod
    def validate_prices(cls, v: Dict[str, float]) -> Dict[str, float]:
        for symbol, price in v.items():
            if price <= 0:
                raise ValueError(f"Price for {symbol} must be positive, got {price}")
        return v


class SwapConfig(BaseModel):
    slippage_tolerance_pct: float = Field(default=0.5, ge=0, lt=100)
    base_fee_usd: float = Field(default=5.0, ge=0)
    requests_per_second: float = Field(default=2.0, gt=0)


class StoreConfig(BaseModel):
    backend: str = Field(default="memory", pattern="^(memory|sqlite)$")
    path: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = "logs/vault_engine.log"
    audit_file: Optional[str] = "logs/audit.jsonl"


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9100, ge=1, le=65535)


class SeedAllocation(BaseModel):
    asset: str = Field(min_length=1)
    percentage: Decimal = Field(ge=0, le=100, decimal_places=2)
    amount_held: Optional[Decimal] = Field(default=None, ge=0)


class SeedTakeProfit(BaseModel):
    strategy: str = Field(pattern="^(manual|percentage-threshold|scheduled-interval)$")
    threshold_pct: Optional[Decimal] = Field(default=None, gt=0)
    interval: Optional[str] = Field(default=None, pattern="^(daily|weekly|monthly)$")
    percentage_to_sell: Decimal = Field(ge=0, le=100)
    baseline_value_usd: Optional[Decimal] = Field(default=None, ge=0)
    active: bool = True


class SeedVault(BaseModel):
    """Vault loaded into the store at start-up when absent"""
    id: str = Field(min_length=1)
    owner: str = Field(min_length=1)
    name: str = ""
    drift_threshold_bp: int = Field(default=500, ge=1, le=10000)
    rebalance_cadence: str = Field(default="manual", pattern="^(manual|weekly|monthly|quarterly|yearly)$")
    auto_rebalance: bool = True
    stable_asset: Optional[str] = None
    allocations: List[SeedAllocation] = Field(default_factory=list)
    take_profit: Optional[SeedTakeProfit] = None

    @field_validator('allocations')
    @classmethod
    def validate_allocation_sum(cls, v: List[SeedAllocation]) -> List[SeedAllocation]:
        if not v:
            return v
        assets = [a.asset for a in v]
        if len(set(assets)) != len(assets):
            raise ValueError(f"Duplicate assets in allocations: {assets}")
        total = sum((a.percentage for a in v), Decimal("0"))
        if abs(total - 100) > Decimal("0.01"):
            raise ValueError(f"Allocations must sum to 100%, got {total}%")
        return v


class AppConfigSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    take_profit: TakeProfitConfig = Field(default_factory=TakeProfitConfig)
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    swap: SwapConfig = Field(default_factory=SwapConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    seed_vaults: List[SeedVault] = Field(default_factory=list)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None or getattr(mark, "line", None) is None:
        return message

    line, column = mark.line, mark.column
    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict (empty file -> {}).

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_schema(config: Dict[str, Any], label: str = "app.yaml") -> List[str]:
    """Validate a loaded config dict against AppConfigSchema."""
    if not isinstance(config, dict):
        return [f"{label}: top level must be a mapping"]
    try:
        AppConfigSchema(**config)
    except ValidationError as e:
        return [
            f"{label}: {' -> '.join(str(loc) for loc in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
    return []


def validate_sanity_checks(config: Dict[str, Any], label: str = "app.yaml") -> List[str]:
    """
    Logical consistency checks that a single field cannot express.

    Detects:
    - sqlite store without a path
    - static price provider with no prices
    - instruction timeout not below the tick interval
    - lease TTL too short to cover one instruction deadline with headroom
    - seeded vault assets with no static price
    """
    errors = []
    loop = config.get("loop") or {}
    store = config.get("store") or {}
    price_feed = config.get("price_feed") or {}

    if store.get("backend") == "sqlite" and not store.get("path"):
        errors.append(f"{label}: store.backend=sqlite requires store.path")

    provider = price_feed.get("provider", "static")
    static_prices = price_feed.get("static_prices") or {}
    if provider == "static" and not static_prices:
        errors.append(f"{label}: price_feed.provider=static requires at least one price in static_prices")

    interval = loop.get("interval_seconds", LoopConfig().interval_seconds)
    timeout = loop.get("instruction_timeout_seconds", LoopConfig().instruction_timeout_seconds)
    if timeout >= interval:
        errors.append(
            f"{label}: loop.instruction_timeout_seconds ({timeout}) must be below "
            f"loop.interval_seconds ({interval})"
        )

    # The lease is renewed before each instruction, so one instruction plus
    # the surrounding valuation and recording must fit inside the TTL
    lease_ttl = loop.get("lease_ttl_seconds", LoopConfig().lease_ttl_seconds)
    if lease_ttl <= 2 * timeout:
        errors.append(
            f"{label}: loop.lease_ttl_seconds ({lease_ttl}) must exceed twice "
            f"loop.instruction_timeout_seconds ({timeout})"
        )

    if provider == "static":
        priced = {s.upper() for s in static_prices}
        for vault in config.get("seed_vaults") or []:
            for alloc in vault.get("allocations") or []:
                if str(alloc.get("asset", "")).upper() not in priced:
                    errors.append(
                        f"{label}: seed vault {vault.get('id')} holds {alloc.get('asset')} "
                        "which has no static price"
                    )

    for vault in config.get("seed_vaults") or []:
        tp = vault.get("take_profit") or {}
        if tp.get("strategy") == "percentage-threshold" and tp.get("threshold_pct") is None:
            errors.append(f"{label}: seed vault {vault.get('id')}: percentage-threshold requires threshold_pct")
        if tp.get("strategy") == "scheduled-interval" and not tp.get("interval"):
            errors.append(f"{label}: seed vault {vault.get('id')}: scheduled-interval requires interval")

    return errors


def validate_config(config_path: str = "config/app.yaml") -> List[str]:
    """
    Validate the app config file.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency), only if the schema passed

    Returns:
        List of all error messages (empty if valid)
    """
    path = Path(config_path)
    label = path.name
    try:
        config = load_yaml_file(path)
    except FileNotFoundError as e:
        return [f"{label}: {e}"]
    except yaml.YAMLError as e:
        return [f"{label}: Invalid YAML - {e}"]

    errors = validate_schema(config, label)
    if not errors:
        errors.extend(validate_sanity_checks(config, label))

    if not errors:
        logger.info(f"✅ {label} validated successfully")
    else:
        logger.error(f"❌ {len(errors)} validation error(s) found in {label}")
    return errors


def main() -> int:
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_file = sys.argv[1] if len(sys.argv) > 1 else "config/app.yaml"
    errors = validate_config(config_file)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        return 1
    print("\n✅ Configuration is valid!\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
