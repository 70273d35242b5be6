"""Price oracle: USD prices and liquidity for Base tokens.

Handles:
  - Native asset (ETH / WETH) price from CoinGecko
  - Token price and pool liquidity from DexScreener (best Base pair)
  - Batched lookups: each distinct token is fetched once per call

Unavailability is never raised to the engines: lookups return ``None``
and the caller treats that as "no decision".
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapdesk.config import NATIVE_TOKENS, ZERO_ADDRESS, PriceFeedConfig
from swapdesk.connectors.rate_limiter import Upstream, rate_limiter
from swapdesk.observability.logger import get_logger
from swapdesk.observability.metrics import metrics
from swapdesk.storage.cache import TTLCache

log = get_logger(__name__)


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class TokenLiquidity:
    """Best pair snapshot for one token."""
    token_address: str
    liquidity_usd: float
    price_usd: float
    pair_address: str = ""
    chain_id: str = ""


# ── Client ───────────────────────────────────────────────────────────

class PriceOracle:
    """Async client over DexScreener and CoinGecko."""

    def __init__(
        self,
        config: PriceFeedConfig,
        cache: TTLCache | None = None,
        client: httpx.AsyncClient | None = None,
        native_tokens: Iterable[str] = NATIVE_TOKENS,
    ):
        self._config = config
        self._cache = cache if cache is not None else TTLCache()
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout_secs,
            headers={"Accept": "application/json"},
        )
        self._native = {t.lower() for t in native_tokens}

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def cache(self) -> TTLCache:
        return self._cache

    def is_native(self, token_address: str) -> bool:
        return token_address.lower() in self._native

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, upstream: Upstream, url: str, params: dict[str, Any] | None = None) -> Any:
        await rate_limiter.acquire(upstream)
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()

    # ── Prices ───────────────────────────────────────────────────────

    async def get_price(self, token_address: str) -> float | None:
        """Current USD price, or None when no feed has one."""
        token = token_address.lower()
        key = f"price:{token}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            if self.is_native(token):
                price = await self._fetch_native_price()
            else:
                pair = await self._fetch_best_pair(token)
                price = pair.price_usd if pair else 0.0
        except Exception as e:
            metrics.incr("oracle.errors")
            log.warning("oracle.price_failed", token=token, error=str(e))
            return None

        if not price or price <= 0:
            metrics.incr("oracle.unavailable")
            return None
        self._cache.put(key, price, self._config.cache_ttl_secs)
        return price

    async def get_prices(self, token_addresses: Iterable[str]) -> dict[str, float | None]:
        """Resolve each distinct token once, concurrently."""
        tokens = sorted({t.lower() for t in token_addresses})
        results = await asyncio.gather(*(self.get_price(t) for t in tokens))
        return dict(zip(tokens, results))

    async def get_native_price(self) -> float | None:
        return await self.get_price(ZERO_ADDRESS)

    async def get_liquidity(self, token_address: str) -> TokenLiquidity | None:
        token = token_address.lower()
        key = f"liquidity:{token}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            pair = await self._fetch_best_pair(token)
        except Exception as e:
            log.warning("oracle.liquidity_failed", token=token, error=str(e))
            return None
        if pair is not None:
            self._cache.put(key, pair, self._config.liquidity_cache_ttl_secs)
        return pair

    def invalidate(self, token_address: str | None = None) -> int:
        """Drop cached entries for one token, or all of them."""
        if token_address is None:
            return self._cache.invalidate_prefix("price:") + self._cache.invalidate_prefix("liquidity:")
        token = token_address.lower()
        return int(self._cache.invalidate(f"price:{token}")) + int(
            self._cache.invalidate(f"liquidity:{token}")
        )

    # ── Upstream calls ───────────────────────────────────────────────

    async def _fetch_native_price(self) -> float:
        data = await self._get(
            Upstream.COINGECKO,
            f"{self._config.coingecko_url.rstrip('/')}/api/v3/simple/price",
            params={"ids": "ethereum", "vs_currencies": "usd"},
        )
        return float(data.get("ethereum", {}).get("usd", 0) or 0)

    async def _fetch_best_pair(self, token: str) -> TokenLiquidity | None:
        data = await self._get(
            Upstream.DEXSCREENER,
            f"{self._config.dexscreener_url.rstrip('/')}/latest/dex/tokens/{token}",
        )
        return parse_best_pair(token, data, self._config.chain_id)


# ── Parsing helpers ──────────────────────────────────────────────────

def parse_best_pair(token: str, data: dict[str, Any], chain_id: str = "base") -> TokenLiquidity | None:
    """Highest-liquidity pair, preferring pairs on ``chain_id``."""
    pairs = data.get("pairs") or []
    if not pairs:
        return None
    on_chain = [p for p in pairs if str(p.get("chainId", "")) in (chain_id, "8453")]
    candidates = on_chain or pairs

    def _liquidity(p: dict[str, Any]) -> float:
        return float((p.get("liquidity") or {}).get("usd") or 0)

    best = max(candidates, key=_liquidity)
    return TokenLiquidity(
        token_address=token,
        liquidity_usd=_liquidity(best),
        price_usd=float(best.get("priceUsd") or 0),
        pair_address=best.get("pairAddress", ""),
        chain_id=str(best.get("chainId", "")),
    )
