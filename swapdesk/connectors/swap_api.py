"""0x Swap API connector.

Handles:
  - Firm quotes (allowance-holder flow) for a sell amount and slippage
  - Submitting a quoted swap through a ``Signer``

Quote and submission failures are raised as distinct error types so the
execute pass can record the reason on the order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapdesk.config import SwapConfig, get_zerox_api_key
from swapdesk.connectors.rate_limiter import Upstream, rate_limiter
from swapdesk.connectors.signing import Signer
from swapdesk.observability.logger import get_logger

log = get_logger(__name__)

NATIVE_TOKEN_SENTINEL = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
_NATIVE_ALIASES = {
    "0x0000000000000000000000000000000000000000",
    "eth",
    NATIVE_TOKEN_SENTINEL.lower(),
}


class SwapQuoteError(Exception):
    pass


class SwapExecutionError(Exception):
    pass


@dataclass
class SwapQuote:
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: float
    fee_estimate_wei: int = 0
    transaction: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class SwapResult:
    transaction_hash: str
    gas_used: int
    gas_price: int = 0
    # Amount of the buy token the taker received, when the receipt shows it
    buy_amount: float | None = None


def received_amount(quote: SwapQuote, result: SwapResult) -> float:
    """What the swap delivered: the receipt's figure if known, else the quote's."""
    return result.buy_amount if result.buy_amount is not None else quote.buy_amount


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def transferred_to(logs: list[dict[str, Any]], token: str, recipient: str) -> int | None:
    """Sum of ERC-20 ``Transfer`` amounts of ``token`` into ``recipient``.

    Returns None when the receipt holds no such transfer (a native-asset
    buy, or a relayer that does not return logs).
    """
    token = token.lower()
    recipient = recipient.lower()
    total = 0
    seen = False
    for entry in logs:
        topics = entry.get("topics") or []
        if len(topics) < 3 or str(topics[0]).lower() != ERC20_TRANSFER_TOPIC:
            continue
        if str(entry.get("address", "")).lower() != token:
            continue
        if _topic_address(str(topics[2])) != recipient:
            continue
        total += int(entry.get("data") or "0x0", 16)
        seen = True
    return total if seen else None


def to_base_units(amount: float, decimals: int) -> int:
    return int(round(amount * 10 ** decimals))


def _api_token(token: str) -> str:
    return NATIVE_TOKEN_SENTINEL if token.lower() in _NATIVE_ALIASES else token


class SwapClient:
    """Async client for the 0x v2 swap API."""

    def __init__(self, config: SwapConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout_secs,
            headers={
                "Accept": "application/json",
                "0x-version": "v2",
                "0x-api-key": get_zerox_api_key(),
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        await rate_limiter.acquire(Upstream.ZEROX)
        return await self._client.get(path, params=params)

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        slippage_bps: int,
        taker: str,
    ) -> SwapQuote:
        """Firm quote for selling ``amount_in`` of ``token_in``."""
        sell_amount = to_base_units(amount_in, self._config.token_decimals)
        params = {
            "chainId": self._config.chain_id,
            "sellToken": _api_token(token_in),
            "buyToken": _api_token(token_out),
            "sellAmount": str(sell_amount),
            "taker": taker,
            "slippageBps": slippage_bps,
        }
        try:
            resp = await self._get("/swap/allowance-holder/quote", params)
        except httpx.HTTPError as e:
            raise SwapQuoteError(f"quote request failed: {e}") from e

        data = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            reason = data.get("reason") or data.get("message") or f"HTTP {resp.status_code}"
            raise SwapQuoteError(f"quote rejected: {reason}")
        if not data.get("buyAmount") or not data.get("transaction"):
            raise SwapQuoteError("quote response missing buyAmount or transaction")

        tx = data["transaction"]
        fee = data.get("totalNetworkFee")
        if fee is None:
            fee = int(tx.get("gas") or 0) * int(tx.get("gasPrice") or 0)
        quote = SwapQuote(
            sell_token=token_in,
            buy_token=token_out,
            sell_amount=sell_amount,
            buy_amount=int(data["buyAmount"]) / 10 ** self._config.token_decimals,
            fee_estimate_wei=int(fee),
            transaction=tx,
            raw=data,
        )
        log.info(
            "swap.quoted",
            sell_token=token_in, buy_token=token_out,
            sell_amount=sell_amount, buy_amount=quote.buy_amount,
        )
        return quote

    async def execute(self, quote: SwapQuote, signer: Signer) -> SwapResult:
        """Submit the quoted transaction. A missing hash is a failure.

        The received amount is read from the receipt's Transfer logs; for a
        native-asset buy there is none and the caller falls back to the quote.
        """
        try:
            receipt = await signer.send_transaction(quote.transaction)
        except Exception as e:
            raise SwapExecutionError(str(e)) from e
        tx_hash = receipt.get("hash")
        if not tx_hash:
            raise SwapExecutionError("no transaction hash returned")
        received: float | None = None
        if quote.buy_token.lower() not in _NATIVE_ALIASES:
            raw = transferred_to(receipt.get("logs") or [], quote.buy_token, signer.address)
            if raw is not None:
                received = raw / 10 ** self._config.token_decimals
        if received is not None and received < quote.buy_amount:
            log.info(
                "swap.slipped",
                tx_hash=tx_hash, quoted=quote.buy_amount, received=received,
            )
        return SwapResult(
            transaction_hash=tx_hash,
            gas_used=int(receipt.get("gas_used") or 0),
            gas_price=int(receipt.get("gas_price") or 0),
            buy_amount=received,
        )
