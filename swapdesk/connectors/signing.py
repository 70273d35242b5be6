"""Signing-material lookup for automated swap submission.

The engines never see key material. They ask a ``SignerProvider`` for a
signer bound to a wallet; ``None`` means automation is not authorised for
that wallet and the order is parked in PENDING_EXECUTION instead.

The only concrete signer is a JSON-RPC relayer: a node or custody service
that holds the keys and exposes ``eth_sendTransaction`` for the wallets it
manages.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapdesk.config import is_live_execution_enabled
from swapdesk.observability.logger import get_logger

log = get_logger(__name__)


class SigningError(Exception):
    """Relayer rejected or failed to mine a transaction."""


class Signer(Protocol):
    address: str

    async def send_transaction(self, tx: dict[str, Any]) -> dict[str, Any]:
        """Submit and wait for the receipt.

        Returns ``{"hash", "gas_used", "gas_price", "logs"}``; ``logs`` are the
        receipt's event logs as returned by the node.
        """
        ...


class SignerProvider(Protocol):
    def signer_for(self, wallet_address: str) -> Signer | None:
        ...


class NoSignerProvider:
    """Automation disabled: every wallet needs manual completion."""

    def signer_for(self, wallet_address: str) -> Signer | None:
        return None


class RelayerSigner:
    """Submits through a JSON-RPC endpoint that custodies ``address``."""

    def __init__(
        self,
        address: str,
        client: httpx.AsyncClient,
        rpc_url: str,
        receipt_timeout_secs: float = 120.0,
        poll_interval_secs: float = 2.0,
    ):
        self.address = address.lower()
        self._client = client
        self._rpc_url = rpc_url
        self._receipt_timeout = receipt_timeout_secs
        self._poll_interval = poll_interval_secs

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _rpc(self, method: str, params: list[Any]) -> Any:
        resp = await self._client.post(
            self._rpc_url,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise SigningError(str(body["error"].get("message", body["error"])))
        return body.get("result")

    async def send_transaction(self, tx: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {"from": self.address}
        for key in ("to", "data"):
            if tx.get(key):
                payload[key] = tx[key]
        # 0x returns decimal strings; JSON-RPC wants hex quantities
        for key in ("value", "gas", "gasPrice"):
            if tx.get(key) is not None:
                payload[key] = hex(int(tx[key]))
        tx_hash = await self._rpc("eth_sendTransaction", [payload])
        if not tx_hash:
            raise SigningError("relayer returned no transaction hash")
        log.info("signer.submitted", wallet=self.address, tx_hash=tx_hash)

        receipt = await self._wait_for_receipt(tx_hash)
        if int(receipt.get("status", "0x1"), 16) != 1:
            raise SigningError(f"transaction {tx_hash} reverted")
        return {
            "hash": tx_hash,
            "gas_used": int(receipt.get("gasUsed", "0x0"), 16),
            "gas_price": int(receipt.get("effectiveGasPrice", "0x0"), 16),
            "logs": receipt.get("logs") or [],
        }

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        waited = 0.0
        while waited < self._receipt_timeout:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return receipt
            await asyncio.sleep(self._poll_interval)
            waited += self._poll_interval
        raise SigningError(f"no receipt for {tx_hash} after {self._receipt_timeout:.0f}s")


class RelayerSignerProvider:
    """Hands out relayer signers for an allow-list of automated wallets."""

    def __init__(self, rpc_url: str, wallets: set[str], timeout_secs: float = 30.0):
        self._rpc_url = rpc_url
        self._wallets = {w.lower() for w in wallets}
        self._client = httpx.AsyncClient(timeout=timeout_secs)

    def signer_for(self, wallet_address: str) -> Signer | None:
        wallet = wallet_address.lower()
        if wallet not in self._wallets:
            return None
        return RelayerSigner(wallet, self._client, self._rpc_url)

    async def close(self) -> None:
        await self._client.aclose()


def default_signer_provider() -> SignerProvider:
    """Relayer provider when live execution is switched on and configured."""
    if not is_live_execution_enabled():
        return NoSignerProvider()
    rpc_url = os.environ.get("RELAYER_RPC_URL", "")
    wallets = {w.strip() for w in os.environ.get("AUTOMATION_WALLETS", "").split(",") if w.strip()}
    if not rpc_url or not wallets:
        log.warning("signer.live_execution_unconfigured")
        return NoSignerProvider()
    log.info("signer.relayer_enabled", wallets=len(wallets))
    return RelayerSignerProvider(rpc_url, wallets)
