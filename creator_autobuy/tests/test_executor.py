"""Tests for quote shaping, transaction building and the dry-run path."""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Dict

import pytest

from conftest import COIN_A, QUOTE, ROUTER, SENDER, SWAP_HASH, TEST_KEY, FakeEth, QuotedExecutor
from creator_autobuy.errors import ExecutionError
from creator_autobuy.executor import ZoraTradeExecutor, build_quote_request, extract_call, to_wei
from creator_autobuy.models import AssetDescriptor, FundingAccount

COIN = COIN_A


def _account(spend: str = "0.05") -> FundingAccount:
    return FundingAccount(name="Wallet1", api_key="k1", private_key=TEST_KEY, spend_eth=Decimal(spend))


class TestHelpers:
    def test_to_wei(self) -> None:
        assert to_wei(Decimal("0.05")) == 50_000_000_000_000_000
        assert to_wei(Decimal("0.009")) == 9_000_000_000_000_000

    def test_to_wei_rejects_dust(self) -> None:
        with pytest.raises(ExecutionError):
            to_wei(Decimal("0.0000000000000000001"))

    def test_build_quote_request(self) -> None:
        body = build_quote_request(
            sender=SENDER, coin_address=COIN, amount_in_wei=10**16, slippage=0.6, chain_id=8453
        )
        assert body == {
            "type": "exactIn",
            "sender": SENDER,
            "recipient": SENDER,
            "amountIn": "10000000000000000",
            "slippage": 0.6,
            "tokenIn": {"type": "eth"},
            "tokenOut": {"type": "erc20", "address": COIN},
            "chainId": 8453,
        }

    def test_extract_call(self) -> None:
        call = extract_call({"call": {"target": ROUTER, "data": "0x01", "value": "0x10"}})
        assert call["value"] == 16
        assert call["target"].lower() == ROUTER
        assert call["data"] == "0x01"

    def test_extract_call_missing_value_is_zero(self) -> None:
        assert extract_call({"call": {"target": ROUTER, "data": "0x01"}})["value"] == 0

    @pytest.mark.parametrize(
        "quote, match",
        [
            ([], "not an object"),
            ({"error": "insufficient liquidity"}, "insufficient liquidity"),
            ({}, "no call"),
            ({"call": {"target": "nope", "data": "0x01"}}, "malformed"),
            ({"call": {"target": ROUTER, "data": "zz"}}, "malformed"),
            ({"call": {"target": ROUTER, "data": "0x01", "value": "lots"}}, "not an integer"),
        ],
    )
    def test_extract_call_errors(self, quote: Any, match: str) -> None:
        with pytest.raises(ExecutionError, match=match):
            extract_call(quote)


class TestDryRun:
    def test_nothing_sent(self) -> None:
        executor = ZoraTradeExecutor(api_url="https://quotes.example", w3=None, chain_id=8453, slippage=0.6)
        result = asyncio.run(executor.execute(_account(), AssetDescriptor(address=COIN), Decimal("0.05")))
        assert result.dry_run is True
        assert executor.submitted == 0


class TestLive:
    def test_build_transaction_fees(self) -> None:
        executor = QuotedExecutor(FakeEth())
        tx = executor.build_transaction(SENDER, extract_call(QUOTE))
        assert tx["nonce"] == 7
        assert tx["gas"] == 150_000
        assert tx["chainId"] == 8453
        assert tx["maxPriorityFeePerGas"] == 1_000_000
        assert tx["maxFeePerGas"] == 2 * 10_000_000 + 1_000_000
        assert tx["value"] == 50_000_000_000_000_000

    def test_execute_signs_and_confirms(self) -> None:
        eth = FakeEth()
        executor = QuotedExecutor(eth)
        result = asyncio.run(executor.execute(_account(), AssetDescriptor(address=COIN), Decimal("0.05")))

        assert result.tx_hash == "0x" + "cd" * 32
        assert result.block_number == 123
        assert result.dry_run is False
        assert len(eth.sent) == 1
        api_key, body = executor.requests[0]
        assert api_key == "k1"
        assert body["amountIn"] == "50000000000000000"
        assert body["sender"] == SENDER
        assert executor.snapshot()["confirmed"] == 1

    def test_spend_argument_is_what_gets_quoted(self) -> None:
        executor = QuotedExecutor(FakeEth())
        asyncio.run(executor.execute(_account("0.05"), AssetDescriptor(address=COIN), Decimal("0.02")))
        assert executor.requests[0][1]["amountIn"] == "20000000000000000"

    def test_reverted(self) -> None:
        executor = QuotedExecutor(FakeEth(receipt_status=0))
        with pytest.raises(ExecutionError, match="reverted") as info:
            asyncio.run(executor.execute(_account(), AssetDescriptor(address=COIN), Decimal("0.05")))
        assert info.value.tx_hash == "0x" + "cd" * 32
        assert executor.errors == 1
        assert info.value.unconfirmed is False

    def test_receipt_timeout_keeps_hash(self) -> None:
        executor = QuotedExecutor(FakeEth(time_out=True))
        with pytest.raises(ExecutionError, match="may still confirm") as info:
            asyncio.run(executor.execute(_account(), AssetDescriptor(address=COIN), Decimal("0.05")))
        assert info.value.tx_hash == "0x" + "cd" * 32
        assert info.value.unconfirmed is True

    def test_quote_error_message_carried(self) -> None:
        executor = QuotedExecutor(FakeEth(), quote={"message": "Zora quote error: 400 bad token"})
        with pytest.raises(ExecutionError, match="400 bad token"):
            asyncio.run(executor.execute(_account(), AssetDescriptor(address=COIN), Decimal("0.05")))

    def test_unexpected_errors_wrapped(self) -> None:
        eth = FakeEth()

        def broken(_tx: Dict[str, Any]) -> int:
            raise ValueError("execution reverted: slippage")

        eth.estimate_gas = broken
        executor = QuotedExecutor(eth)
        with pytest.raises(ExecutionError, match="slippage"):
            asyncio.run(executor.execute(_account(), AssetDescriptor(address=COIN), Decimal("0.05")))


class TestCheckReceipt:
    def test_unmined_is_none(self) -> None:
        eth = FakeEth()
        executor = QuotedExecutor(eth)
        assert asyncio.run(executor.check_receipt(SWAP_HASH)) is None
        assert eth.receipt_lookups == [SWAP_HASH]

    def test_mined(self) -> None:
        eth = FakeEth()
        eth.landed_status = 1
        executor = QuotedExecutor(eth)
        confirmation = asyncio.run(executor.check_receipt(SWAP_HASH))
        assert confirmation is not None
        assert confirmation.tx_hash == SWAP_HASH
        assert confirmation.block_number == 124
        assert executor.confirmed == 1

    def test_reverted_raises(self) -> None:
        eth = FakeEth()
        eth.landed_status = 0
        executor = QuotedExecutor(eth)
        with pytest.raises(ExecutionError, match="reverted") as info:
            asyncio.run(executor.check_receipt(SWAP_HASH))
        assert info.value.unconfirmed is False
