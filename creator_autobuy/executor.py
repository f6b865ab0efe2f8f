"""Purchase executor — swaps native ETH into a creator coin.

One ``execute`` call is one attempt: ask the Zora quote API for a swap call,
sign it with the account key and broadcast it over the Base RPC, then wait
for the receipt. Retrying is the caller's business.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import aiohttp
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from .errors import ExecutionError
from .models import AssetDescriptor, FundingAccount, TxConfirmation

log = logging.getLogger(__name__)


class PurchaseExecutor(Protocol):
    async def execute(
        self,
        account: FundingAccount,
        asset: AssetDescriptor,
        spend_eth: Decimal,
    ) -> TxConfirmation: ...

    async def check_receipt(self, tx_hash: str) -> Optional[TxConfirmation]: ...


def to_wei(spend_eth: Decimal) -> int:
    wei = int(Web3.to_wei(spend_eth, "ether"))
    if wei <= 0:
        raise ExecutionError(f"spend amount too small: {spend_eth} ETH")
    return wei


def build_quote_request(
    *,
    sender: str,
    coin_address: str,
    amount_in_wei: int,
    slippage: float,
    chain_id: int,
) -> Dict[str, Any]:
    """Body for POST /quote: exact ETH in, creator coin out."""
    return {
        "type": "exactIn",
        "sender": sender,
        "recipient": sender,
        "amountIn": str(amount_in_wei),
        "slippage": slippage,
        "tokenIn": {"type": "eth"},
        "tokenOut": {"type": "erc20", "address": coin_address},
        "chainId": chain_id,
    }


def extract_call(quote: Any) -> Dict[str, Any]:
    """Pull ``{target, data, value}`` out of a quote response."""
    if not isinstance(quote, dict):
        raise ExecutionError("quote response is not an object")
    call = quote.get("call")
    if not isinstance(call, dict):
        message = quote.get("error") or quote.get("message") or "quote response has no call"
        raise ExecutionError(str(message))
    target = str(call.get("target") or "").strip()
    data = str(call.get("data") or "").strip()
    if not Web3.is_address(target) or not data.startswith("0x"):
        raise ExecutionError("quote call is malformed")
    raw_value = call.get("value") or "0"
    try:
        value = int(str(raw_value), 0)
    except ValueError:
        raise ExecutionError(f"quote call value is not an integer: {raw_value!r}") from None
    return {"target": Web3.to_checksum_address(target), "data": data, "value": value}


class ZoraTradeExecutor:
    """Zora quote API + raw signed transaction over HTTP RPC."""

    def __init__(
        self,
        *,
        api_url: str,
        w3: Any,
        chain_id: int,
        slippage: float,
        dry_run: bool = True,
        http_timeout_seconds: float = 15.0,
        receipt_timeout_seconds: float = 180.0,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._w3 = w3
        self._chain_id = int(chain_id)
        self._slippage = float(slippage)
        self.dry_run = dry_run
        self._timeout = aiohttp.ClientTimeout(total=http_timeout_seconds)
        self._receipt_timeout = float(receipt_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

        self.submitted = 0
        self.confirmed = 0
        self.errors = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def execute(
        self,
        account: FundingAccount,
        asset: AssetDescriptor,
        spend_eth: Decimal,
    ) -> TxConfirmation:
        amount_in = to_wei(spend_eth)
        signer = Account.from_key(account.private_key)
        if self.dry_run:
            log.info("[dry-run] %s would buy %s with %s ETH (%d wei) from %s",
                     account.name, asset.address, spend_eth, amount_in, signer.address)
            return TxConfirmation(tx_hash="dry-run", dry_run=True)

        try:
            quote = await self._fetch_quote(account.api_key, build_quote_request(
                sender=signer.address,
                coin_address=asset.address,
                amount_in_wei=amount_in,
                slippage=self._slippage,
                chain_id=self._chain_id,
            ))
            call = extract_call(quote)
            return await asyncio.to_thread(self._send_and_wait, signer, call)
        except ExecutionError:
            self.errors += 1
            raise
        except Exception as exc:
            self.errors += 1
            raise ExecutionError(str(exc) or type(exc).__name__) from exc

    async def _fetch_quote(self, api_key: str, body: Dict[str, Any]) -> Any:
        headers = {"accept": "application/json", "content-type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        session = await self._get_session()
        async with session.post(f"{self._api_url}/quote", json=body, headers=headers) as resp:
            if resp.status < 200 or resp.status >= 300:
                text = await resp.text()
                raise ExecutionError(f"Zora quote error: {resp.status} {text[:400]}")
            return await resp.json(content_type=None)

    def build_transaction(self, sender: str, call: Dict[str, Any]) -> Dict[str, Any]:
        eth = self._w3.eth
        tx: Dict[str, Any] = {
            "chainId": self._chain_id,
            "from": sender,
            "to": call["target"],
            "data": call["data"],
            "value": int(call["value"]),
            "nonce": eth.get_transaction_count(sender, "pending"),
        }
        tx["gas"] = int(eth.estimate_gas(tx))
        priority = int(eth.max_priority_fee)
        base_fee = int(eth.get_block("latest")["baseFeePerGas"])
        tx["maxPriorityFeePerGas"] = priority
        tx["maxFeePerGas"] = base_fee * 2 + priority
        return tx

    def _send_and_wait(self, signer: Any, call: Dict[str, Any]) -> TxConfirmation:
        tx = self.build_transaction(signer.address, call)
        signed = signer.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        self.submitted += 1
        log.info("submitted swap tx %s (value=%d gas=%d)", tx_hex, tx["value"], tx["gas"])
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except TimeExhausted as exc:
            raise ExecutionError(
                f"no receipt for {tx_hex} after {self._receipt_timeout:.0f}s, it may still confirm",
                tx_hash=tx_hex,
                unconfirmed=True,
            ) from exc
        if int(receipt["status"]) != 1:
            raise ExecutionError(f"swap transaction reverted: {tx_hex}", tx_hash=tx_hex)
        self.confirmed += 1
        return TxConfirmation(tx_hash=tx_hex, block_number=int(receipt["blockNumber"]))

    async def check_receipt(self, tx_hash: str) -> Optional[TxConfirmation]:
        """Outcome of an earlier swap: confirmation, None while unmined.

        Raises ExecutionError when it reverted.
        """
        try:
            receipt = await asyncio.to_thread(self._w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        if int(receipt["status"]) != 1:
            raise ExecutionError(f"swap transaction reverted: {tx_hash}", tx_hash=tx_hash)
        self.confirmed += 1
        return TxConfirmation(tx_hash=tx_hash, block_number=int(receipt["blockNumber"]))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "submitted": self.submitted,
            "confirmed": self.confirmed,
            "errors": self.errors,
        }
