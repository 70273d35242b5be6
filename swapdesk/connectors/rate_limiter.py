"""Request budgets for the upstream APIs.

Three upstreams are called: DexScreener (token prices and liquidity),
CoinGecko (native price) and the 0x swap API. Each gets one token bucket
sized from ``RateLimitConfig``. Callers reserve a slot and sleep for the
reservation's delay, so concurrent lookups inside one batch pass queue up
in order instead of bursting past the budget.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable

from swapdesk.config import RateLimitConfig, UpstreamLimit
from swapdesk.observability.logger import get_logger

log = get_logger(__name__)


class Upstream(str, Enum):
    DEXSCREENER = "dexscreener"
    COINGECKO = "coingecko"
    ZEROX = "zerox"


@dataclass
class BucketStats:
    requests: int = 0
    throttled: int = 0
    waited_secs: float = 0.0


class TokenBucket:
    """Reservation-style bucket; the balance may go negative while callers wait."""

    def __init__(self, limit: UpstreamLimit, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self._clock = clock
        self._tokens = float(limit.burst)
        self._updated = clock()
        self._lock = Lock()
        self.stats = BucketStats()

    def reserve(self) -> float:
        """Take one slot and return how long the caller must wait for it."""
        with self._lock:
            now = self._clock()
            self._tokens = min(
                float(self.limit.burst),
                self._tokens + (now - self._updated) * self.limit.per_second,
            )
            self._updated = now
            self._tokens -= 1.0
            self.stats.requests += 1
            if self._tokens >= 0:
                return 0.0
            delay = -self._tokens / self.limit.per_second
            self.stats.throttled += 1
            self.stats.waited_secs += delay
            return delay


class UpstreamLimiter:
    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._lock = Lock()
        self._buckets: dict[Upstream, TokenBucket] = {}
        self.configure(config or RateLimitConfig())

    def configure(self, config: RateLimitConfig) -> None:
        """Resize the buckets whose budget changed; others keep their balance."""
        with self._lock:
            for upstream in Upstream:
                limit: UpstreamLimit = getattr(config, upstream.value)
                current = self._buckets.get(upstream)
                if current is None or current.limit != limit:
                    self._buckets[upstream] = TokenBucket(limit, self._clock)

    def bucket(self, upstream: Upstream | str) -> TokenBucket:
        return self._buckets[Upstream(upstream)]

    async def acquire(self, upstream: Upstream | str) -> None:
        delay = self.bucket(upstream).reserve()
        if delay > 0:
            log.debug("rate_limiter.throttled", upstream=Upstream(upstream).value, delay_secs=round(delay, 3))
            await asyncio.sleep(delay)

    def stats(self) -> dict[str, BucketStats]:
        with self._lock:
            return {u.value: b.stats for u, b in self._buckets.items()}


rate_limiter = UpstreamLimiter()
