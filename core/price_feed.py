"""
Vault Engine Core: Price Feed

Price sources consumed by the engine, plus the per-cycle cache the scheduler
owns.

- get_price(symbol) raises MissingPrice / PriceSourceError, never a default
- get_prices(symbols) returns only the symbols it could price; callers treat
  an absent symbol as missing
"""

import logging
import random
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Tuple

import requests

from core.exceptions import MissingPrice, PriceSourceError
from core.models import PricePoint, PriceSnapshot, to_decimal
from infra.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"

# Symbol -> CoinGecko coin id
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "ADA": "cardano",
    "DOT": "polkadot",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "AAVE": "aave",
    "L1X": "layer-one-x",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
}


class PriceSource(ABC):

    @abstractmethod
    def get_price(self, symbol: str) -> PricePoint:
        ...

    def get_prices(self, symbols: Iterable[str]) -> PriceSnapshot:
        snapshot: PriceSnapshot = {}
        for symbol in symbols:
            try:
                snapshot[symbol] = self.get_price(symbol)
            except (MissingPrice, PriceSourceError) as e:
                logger.warning(f"No price for {symbol}: {e}")
        return snapshot


class StaticPriceSource(PriceSource):
    """Fixed prices, for dry runs and tests."""

    def __init__(self, prices: Dict[str, object], previous_24h: Optional[Dict[str, object]] = None):
        previous_24h = previous_24h or {}
        self._prices = {
            symbol.upper(): PricePoint(
                current=to_decimal(price),
                previous_24h=to_decimal(previous_24h[symbol]) if symbol in previous_24h else None,
            )
            for symbol, price in prices.items()
        }

    def set_price(self, symbol: str, price: object) -> None:
        self._prices[symbol.upper()] = PricePoint(current=to_decimal(price))

    def get_price(self, symbol: str) -> PricePoint:
        try:
            return self._prices[symbol.upper()]
        except KeyError:
            raise MissingPrice(symbol) from None


class CoinGeckoPriceSource(PriceSource):
    """
    CoinGecko simple/price client.

    Retries on 429, 5xx and network errors with exponential backoff and jitter;
    client errors are raised immediately. Calls go through the shared rate
    limiter's "prices" channel.
    """

    def __init__(
        self,
        base_url: str = COINGECKO_BASE_URL,
        rate_limiter: Optional[RateLimiter] = None,
        id_map: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.id_map = {k.upper(): v for k, v in (id_map or COINGECKO_IDS).items()}
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max_retries

    def get_price(self, symbol: str) -> PricePoint:
        snapshot = self._fetch([symbol])
        if symbol not in snapshot:
            raise MissingPrice(symbol)
        return snapshot[symbol]

    def get_prices(self, symbols: Iterable[str]) -> PriceSnapshot:
        symbols = list(dict.fromkeys(symbols))
        if not symbols:
            return {}
        try:
            return self._fetch(symbols)
        except PriceSourceError as e:
            logger.error(f"Price fetch failed for {symbols}: {e}")
            return {}

    def _fetch(self, symbols) -> PriceSnapshot:
        ids: Dict[str, str] = {}
        for symbol in symbols:
            coin_id = self.id_map.get(symbol.upper())
            if coin_id is None:
                logger.warning(f"No CoinGecko id mapping for symbol: {symbol}")
                continue
            ids[symbol] = coin_id
        if not ids:
            return {}

        payload = self._get(
            "/simple/price",
            {
                "ids": ",".join(sorted(set(ids.values()))),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
            },
            symbol=",".join(ids),
        )

        snapshot: PriceSnapshot = {}
        for symbol, coin_id in ids.items():
            entry = payload.get(coin_id) or {}
            if entry.get("usd") is None:
                logger.warning(f"No price data found for {symbol} ({coin_id})")
                continue
            current = to_decimal(entry["usd"])
            previous = None
            change = entry.get("usd_24h_change")
            if change is not None:
                divisor = 1 + to_decimal(change) / 100
                if divisor > 0:
                    previous = current / divisor
            snapshot[symbol] = PricePoint(current=current, previous_24h=previous)
        return snapshot

    def _get(self, endpoint: str, params: Dict[str, str], symbol: str) -> dict:
        url = self.base_url + endpoint
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            if self.rate_limiter:
                self.rate_limiter.acquire("prices", endpoint=endpoint)
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Price API client error: {status_code} on {endpoint}")
                    raise PriceSourceError(symbol, e) from e
                logger.warning(
                    f"Price API error ({status_code}) on {endpoint}, attempt {attempt + 1}/{self.max_retries}"
                )
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except ValueError as e:
                # Malformed JSON body
                raise PriceSourceError(symbol, e) from e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {endpoint}")
        raise PriceSourceError(symbol, last_exception)


class CyclePriceCache(PriceSource):
    """
    Read-through cache in front of a PriceSource, owned by the scheduler.

    start_cycle() is called at each tick boundary and drops every entry older
    than ttl_seconds (all of them when ttl_seconds is 0), so within one tick
    every vault sees the same price for a symbol.
    """

    def __init__(self, source: PriceSource, ttl_seconds: float = 0.0,
                 clock: Callable[[], float] = time.monotonic):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[PricePoint, float]] = {}
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def start_cycle(self) -> None:
        now = self._clock()
        with self._lock:
            if self.ttl_seconds <= 0:
                self._entries.clear()
            else:
                self._entries = {
                    symbol: entry for symbol, entry in self._entries.items()
                    if now - entry[1] < self.ttl_seconds
                }

    def get_price(self, symbol: str) -> PricePoint:
        snapshot = self.get_prices([symbol])
        if symbol not in snapshot:
            raise MissingPrice(symbol)
        return snapshot[symbol]

    def get_prices(self, symbols: Iterable[str]) -> PriceSnapshot:
        symbols = list(dict.fromkeys(symbols))
        snapshot: PriceSnapshot = {}
        with self._lock:
            for symbol in symbols:
                entry = self._entries.get(symbol)
                if entry is not None:
                    snapshot[symbol] = entry[0]
            missing = [s for s in symbols if s not in snapshot]
            self.hits += len(snapshot)
            self.misses += len(missing)

        if missing:
            fetched = self.source.get_prices(missing)
            now = self._clock()
            with self._lock:
                for symbol, point in fetched.items():
                    # First writer wins so concurrent vaults agree within a cycle
                    entry = self._entries.setdefault(symbol, (point, now))
                    snapshot[symbol] = entry[0]
        return snapshot

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
