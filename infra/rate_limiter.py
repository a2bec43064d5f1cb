"""
Per-channel Token Bucket Rate Limiting

The engine talks to two rate-limited collaborators: the price source and the
swap service. Each gets a named channel with its own bucket, so a burst of
quotes never starves price refreshes.

Usage:
    limiter = RateLimiter({"prices": 5.0, "swaps": 2.0})
    limiter.acquire("prices", endpoint="simple/price")
"""
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Waits longer than this are logged at WARNING
SLOW_WAIT_SECONDS = 1.0


@dataclass
class Channel:
    """
    One rate-limited channel: a token bucket plus its throttle counters.

    Tokens accrue at `rate` per second up to `capacity`; a call spends one.
    """
    name: str
    rate: float
    capacity: float
    tokens: float = field(init=False)
    updated_at: float = field(init=False)
    calls: int = 0
    throttled: int = 0
    waited_ms_total: float = 0.0
    waited_ms_max: float = 0.0

    def __post_init__(self):
        self.tokens = self.capacity
        self.updated_at = time.monotonic()

    def top_up(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.rate)
        self.updated_at = now

    def shortfall_seconds(self, cost: float = 1.0) -> float:
        """Seconds until `cost` tokens are on hand (0.0 when they already are)."""
        self.top_up()
        missing = cost - self.tokens
        return missing / self.rate if missing > 0 else 0.0

    def spend(self, cost: float, waited: float) -> None:
        self.top_up()
        self.tokens = max(self.tokens - cost, 0.0)
        self.calls += 1
        if waited > 0:
            waited_ms = waited * 1000.0
            self.throttled += 1
            self.waited_ms_total += waited_ms
            self.waited_ms_max = max(self.waited_ms_max, waited_ms)

    def clear_counters(self) -> None:
        self.calls = 0
        self.throttled = 0
        self.waited_ms_total = 0.0
        self.waited_ms_max = 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "channel": self.name,
            "total_requests": self.calls,
            "blocked_requests": self.throttled,
            "utilization_pct": (self.throttled / self.calls * 100.0) if self.calls else 0.0,
            "max_wait_time_ms": self.waited_ms_max,
            "current_tokens": self.tokens,
            "capacity": self.capacity,
            "refill_rate": self.rate,
        }


class RateLimiter:
    """
    Blocks callers until their channel has a token.

    Args:
        limits: channel name -> calls per second
        burst_multiplier: bucket capacity as a multiple of the rate
    """

    def __init__(self, limits: Dict[str, float], burst_multiplier: float = 2.0):
        if not limits:
            raise ValueError("RateLimiter needs at least one channel")
        self._channels: Dict[str, Channel] = {}
        for name, rate in limits.items():
            if rate <= 0:
                raise ValueError(f"Rate for channel {name} must be positive, got {rate}")
            self._channels[name] = Channel(name=name, rate=rate, capacity=max(1.0, rate * burst_multiplier))
        self._lock = Lock()

        summary = ", ".join(f"{name}={rate}/s" for name, rate in limits.items())
        logger.info(f"Rate limits: {summary} (burst {burst_multiplier}x)")

    def _channel(self, name: str) -> Channel:
        channel = self._channels.get(name)
        if channel is None:
            raise ValueError(f"Invalid channel: {name}. Known: {sorted(self._channels)}")
        return channel

    def acquire(self, channel: str, endpoint: str = "unknown", tokens: float = 1.0, block: bool = True) -> float:
        """
        Take `tokens` from `channel`, sleeping until they are available.

        Returns:
            Seconds waited (0.0 when the call went straight through)

        Raises:
            ValueError: unknown channel, or no tokens and block=False
        """
        bucket = self._channel(channel)

        with self._lock:
            wait = bucket.shortfall_seconds(tokens)
            if wait == 0.0:
                bucket.spend(tokens, 0.0)
                return 0.0
            if not block:
                raise ValueError(
                    f"Rate limit exceeded for {channel}:{endpoint}; next token in {wait:.2f}s"
                )

        if wait > SLOW_WAIT_SECONDS:
            logger.warning(f"Throttling {channel}:{endpoint} for {wait:.2f}s")
        else:
            logger.debug(f"Throttling {channel}:{endpoint} for {wait:.3f}s")
        time.sleep(wait)

        with self._lock:
            bucket.spend(tokens, wait)
        return wait

    def get_stats(self, channel: Optional[str] = None) -> Dict[str, Any]:
        """Counters for one channel, or every channel keyed by name."""
        with self._lock:
            if channel is not None:
                return self._channel(channel).snapshot()
            return {name: c.snapshot() for name, c in self._channels.items()}

    def reset_stats(self) -> None:
        with self._lock:
            for channel in self._channels.values():
                channel.clear_counters()
