"""
Vault Engine Core: Domain Models

Vaults, allocations, prices, valuations, rebalance instructions, take-profit
settings and history records shared by every stage of the engine.

Conventions:
- Money is Decimal (USD)
- Portfolio shares and drift are integer basis points (10000 = 100%)
- Timestamps are timezone-aware UTC datetimes
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import InvalidAllocationSet

BPS_PER_UNIT = 10000
FULL_ALLOCATION_BP = 10000
ALLOCATION_EPSILON_BP = 1  # 0.01%


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """Coerce floats/ints/strings into Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a decimal value: {value!r}") from exc


def share_to_bp(part: Decimal, total: Decimal) -> int:
    """Share of total as integer basis points (banker's rounding)."""
    if total <= 0:
        return 0
    return int((part * BPS_PER_UNIT / total).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


class RebalanceCadence(Enum):
    """Time-based rebalance cadence. Durations are fixed-day approximations."""
    MANUAL = "manual"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def duration(self) -> Optional[timedelta]:
        return _CADENCE_DURATIONS.get(self)


_CADENCE_DURATIONS = {
    RebalanceCadence.WEEKLY: timedelta(days=7),
    RebalanceCadence.MONTHLY: timedelta(days=30),
    RebalanceCadence.QUARTERLY: timedelta(days=90),
    RebalanceCadence.YEARLY: timedelta(days=365),
}


class TakeProfitStrategy(Enum):
    MANUAL = "manual"
    PERCENTAGE_THRESHOLD = "percentage-threshold"
    SCHEDULED_INTERVAL = "scheduled-interval"


TAKE_PROFIT_INTERVALS = {
    "daily": 86400,
    "weekly": 7 * 86400,
    "monthly": 30 * 86400,
}


class HistoryKind(Enum):
    REBALANCE = "rebalance"
    TAKE_PROFIT = "take_profit"


class HistoryStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class TriggerSource(Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


class InstructionStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Vault:
    """Investment vault with its rebalance settings."""
    id: str
    owner: str
    drift_threshold_bp: int = 500
    rebalance_cadence: RebalanceCadence = RebalanceCadence.MANUAL
    last_rebalanced_at: Optional[datetime] = None
    auto_rebalance: bool = True
    name: str = ""
    stable_asset: str = "USDC"

    def __post_init__(self):
        if not isinstance(self.drift_threshold_bp, int) or not 1 <= self.drift_threshold_bp <= BPS_PER_UNIT:
            raise ValueError(
                f"drift_threshold_bp must be an integer in 1..{BPS_PER_UNIT}, got {self.drift_threshold_bp!r}"
            )
        if isinstance(self.rebalance_cadence, str):
            object.__setattr__(self, "rebalance_cadence", RebalanceCadence(self.rebalance_cadence))

    def with_updates(self, **fields) -> "Vault":
        return replace(self, **fields)


@dataclass(frozen=True)
class Allocation:
    """Target share of one asset within a vault."""
    vault_id: str
    asset: str
    target_bp: int
    amount_held: Optional[Decimal] = None  # None when on-chain balance is unknown

    def __post_init__(self):
        if self.amount_held is not None and not isinstance(self.amount_held, Decimal):
            object.__setattr__(self, "amount_held", to_decimal(self.amount_held))

    @classmethod
    def from_percentage(cls, vault_id: str, asset: str, percentage: Any,
                        amount_held: Optional[Any] = None) -> "Allocation":
        """Build from a percentage like "33.33" (at most 2 decimals)."""
        pct = to_decimal(percentage)
        bp = pct * 100
        if bp != bp.to_integral_value():
            raise ValueError(f"percentage {percentage} has more than 2 decimal places")
        return cls(
            vault_id=vault_id,
            asset=asset,
            target_bp=int(bp),
            amount_held=to_decimal(amount_held) if amount_held is not None else None,
        )

    @property
    def target_pct(self) -> Decimal:
        return Decimal(self.target_bp) / 100


def validate_allocation_set(vault_id: str, allocations: Iterable[Allocation]) -> None:
    """
    Enforce the allocation invariants for one vault.

    Raises:
        InvalidAllocationSet: duplicate asset, out-of-range target, or
            targets not summing to 100% within ALLOCATION_EPSILON_BP.
    """
    allocations = list(allocations)
    if not allocations:
        return

    seen = set()
    total = 0
    for alloc in allocations:
        if alloc.asset in seen:
            raise InvalidAllocationSet(vault_id, f"duplicate asset {alloc.asset}")
        seen.add(alloc.asset)
        if not 0 <= alloc.target_bp <= FULL_ALLOCATION_BP:
            raise InvalidAllocationSet(vault_id, f"target for {alloc.asset} out of range: {alloc.target_bp}bp")
        total += alloc.target_bp

    if abs(total - FULL_ALLOCATION_BP) > ALLOCATION_EPSILON_BP:
        raise InvalidAllocationSet(vault_id, f"targets sum to {total}bp, expected {FULL_ALLOCATION_BP}bp")


@dataclass(frozen=True)
class PricePoint:
    """Current price and, when known, the price ~24h earlier."""
    current: Decimal
    previous_24h: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "current", to_decimal(self.current))
        if self.previous_24h is not None:
            object.__setattr__(self, "previous_24h", to_decimal(self.previous_24h))

    @property
    def change_24h_pct(self) -> Optional[Decimal]:
        if self.previous_24h is None or self.previous_24h == 0:
            return None
        return (self.current - self.previous_24h) / self.previous_24h * 100


PriceSnapshot = Dict[str, PricePoint]


@dataclass(frozen=True)
class AssetValuation:
    asset: str
    price: Decimal
    value_usd: Decimal
    current_bp: int
    target_bp: int
    estimated: bool = False

    @property
    def drift_bp(self) -> int:
        return abs(self.current_bp - self.target_bp)

    @property
    def signed_drift_bp(self) -> int:
        """Positive when over-allocated, negative when under-allocated."""
        return self.current_bp - self.target_bp


@dataclass(frozen=True)
class ValuationResult:
    """Per-vault valuation for one cycle."""
    vault_id: str
    total_value_usd: Decimal
    assets: List[AssetValuation]
    estimated: bool = False
    valued_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return False

    def get(self, asset: str) -> Optional[AssetValuation]:
        for item in self.assets:
            if item.asset == asset:
                return item
        return None

    @property
    def max_drift_bp(self) -> int:
        return max((a.drift_bp for a in self.assets), default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_id": self.vault_id,
            "total_value_usd": str(self.total_value_usd),
            "estimated": self.estimated,
            "valued_at": self.valued_at.isoformat(),
            "assets": [
                {
                    "asset": a.asset,
                    "price": str(a.price),
                    "value_usd": str(a.value_usd),
                    "current_bp": a.current_bp,
                    "target_bp": a.target_bp,
                    "drift_bp": a.drift_bp,
                    "estimated": a.estimated,
                }
                for a in self.assets
            ],
        }


@dataclass(frozen=True)
class EmptyPortfolio(ValuationResult):
    """No value to measure: no drift, no action."""

    @property
    def is_empty(self) -> bool:
        return True


@dataclass(frozen=True)
class RebalanceInstruction:
    """One directed swap of portfolio value from source to destination."""
    sequence: int
    source_asset: str
    destination_asset: str
    amount_bp: int
    amount_usd: Decimal
    source_amount: Optional[Decimal] = None  # in source asset units when its price is known

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "source_asset": self.source_asset,
            "destination_asset": self.destination_asset,
            "amount_bp": self.amount_bp,
            "amount_usd": str(self.amount_usd),
            "source_amount": str(self.source_amount) if self.source_amount is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalanceInstruction":
        return cls(
            sequence=int(data["sequence"]),
            source_asset=data["source_asset"],
            destination_asset=data["destination_asset"],
            amount_bp=int(data["amount_bp"]),
            amount_usd=to_decimal(data["amount_usd"]),
            source_amount=to_decimal(data["source_amount"]) if data.get("source_amount") is not None else None,
        )


@dataclass(frozen=True)
class SwapQuote:
    output_amount: Decimal
    fee: Decimal
    price_impact_pct: Decimal
    estimated_time_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_amount": str(self.output_amount),
            "fee": str(self.fee),
            "price_impact_pct": str(self.price_impact_pct),
            "estimated_time_minutes": self.estimated_time_minutes,
        }


@dataclass(frozen=True)
class SwapResult:
    status: str  # "completed" | "failed"
    tx_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


@dataclass
class InstructionOutcome:
    sequence: int
    status: InstructionStatus
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    quote: Optional[SwapQuote] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "error": self.error,
            "quote": self.quote.to_dict() if self.quote else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstructionOutcome":
        quote = data.get("quote")
        return cls(
            sequence=int(data["sequence"]),
            status=InstructionStatus(data["status"]),
            tx_ref=data.get("tx_ref"),
            error=data.get("error"),
            quote=SwapQuote(
                output_amount=to_decimal(quote["output_amount"]),
                fee=to_decimal(quote["fee"]),
                price_impact_pct=to_decimal(quote["price_impact_pct"]),
                estimated_time_minutes=int(quote["estimated_time_minutes"]),
            ) if quote else None,
        )


@dataclass(frozen=True)
class TakeProfitSetting:
    """Take-profit strategy attached to exactly one vault."""
    vault_id: str
    strategy: TakeProfitStrategy
    threshold_pct: Optional[Decimal] = None
    interval_seconds: Optional[int] = None
    percentage_to_sell: Decimal = Decimal("0")
    baseline_value_usd: Optional[Decimal] = None
    last_execution_at: Optional[datetime] = None
    active: bool = True

    def __post_init__(self):
        if isinstance(self.strategy, str):
            object.__setattr__(self, "strategy", TakeProfitStrategy(self.strategy))
        object.__setattr__(self, "percentage_to_sell", to_decimal(self.percentage_to_sell))
        if self.threshold_pct is not None:
            object.__setattr__(self, "threshold_pct", to_decimal(self.threshold_pct))
        if self.baseline_value_usd is not None:
            object.__setattr__(self, "baseline_value_usd", to_decimal(self.baseline_value_usd))
        if not Decimal("0") <= self.percentage_to_sell <= Decimal("100"):
            raise ValueError(f"percentage_to_sell must be within 0..100, got {self.percentage_to_sell}")
        if self.strategy == TakeProfitStrategy.PERCENTAGE_THRESHOLD and (
            self.threshold_pct is None or self.threshold_pct <= 0
        ):
            raise ValueError("percentage-threshold strategy requires a positive threshold_pct")
        if self.strategy == TakeProfitStrategy.SCHEDULED_INTERVAL and (
            self.interval_seconds is None or self.interval_seconds <= 0
        ):
            raise ValueError("scheduled-interval strategy requires a positive interval_seconds")

    @classmethod
    def scheduled(cls, vault_id: str, interval: str, percentage_to_sell: Any, **kwargs) -> "TakeProfitSetting":
        """Build a scheduled strategy from a named interval (daily/weekly/monthly)."""
        try:
            seconds = TAKE_PROFIT_INTERVALS[interval]
        except KeyError:
            raise ValueError(f"unknown take-profit interval: {interval}") from None
        return cls(
            vault_id=vault_id,
            strategy=TakeProfitStrategy.SCHEDULED_INTERVAL,
            interval_seconds=seconds,
            percentage_to_sell=percentage_to_sell,
            **kwargs,
        )

    @property
    def interval(self) -> Optional[timedelta]:
        return timedelta(seconds=self.interval_seconds) if self.interval_seconds else None

    def with_updates(self, **fields) -> "TakeProfitSetting":
        return replace(self, **fields)


@dataclass
class HistoryEntry:
    """
    Append-only record of one triggered rebalance or take-profit cycle.

    Created as PENDING before the first swap; finalized exactly once.
    """
    vault_id: str
    kind: HistoryKind
    trigger: TriggerSource
    instructions: List[RebalanceInstruction]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: HistoryStatus = HistoryStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    finalized_at: Optional[datetime] = None
    outcomes: List[InstructionOutcome] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    retry_of: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status != HistoryStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vault_id": self.vault_id,
            "kind": self.kind.value,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
            "instructions": [i.to_dict() for i in self.instructions],
            "outcomes": [o.to_dict() for o in self.outcomes],
            "detail": self.detail,
            "failure_reason": self.failure_reason,
            "retry_of": self.retry_of,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=data["id"],
            vault_id=data["vault_id"],
            kind=HistoryKind(data["kind"]),
            trigger=TriggerSource(data["trigger"]),
            status=HistoryStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            finalized_at=datetime.fromisoformat(data["finalized_at"]) if data.get("finalized_at") else None,
            instructions=[RebalanceInstruction.from_dict(i) for i in data.get("instructions", [])],
            outcomes=[InstructionOutcome.from_dict(o) for o in data.get("outcomes", [])],
            detail=data.get("detail") or {},
            failure_reason=data.get("failure_reason"),
            retry_of=data.get("retry_of"),
        )
