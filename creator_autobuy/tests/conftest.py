"""Offline fakes shared by the engine tests."""
from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest
from eth_account import Account
from web3.exceptions import TimeExhausted, TransactionNotFound

from creator_autobuy.errors import ExecutionError
from creator_autobuy.executor import ZoraTradeExecutor
from creator_autobuy.models import AssetDescriptor, FundingAccount, TxConfirmation

COIN_A = "0xAAA0000000000000000000000000000000000001"
COIN_B = "0xBBB0000000000000000000000000000000000002"

KEY_1 = "0x" + "11" * 32
KEY_2 = "0x" + "22" * 32

# Well-known throwaway key from the web3.py docs.
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
SENDER = Account.from_key(TEST_KEY).address
ROUTER = "0x6ff5693b99212da76ad316178a184ab56d299b43"
SWAP_HASH = "0x" + "cd" * 32

QUOTE = {"call": {"target": ROUTER, "data": "0xdeadbeef", "value": "50000000000000000"}}

Scripted = Union[AssetDescriptor, None, BaseException]


class RecordingNotifier:
    def __init__(self, accounts: Sequence[FundingAccount] = ()) -> None:
        self.texts: List[str] = []
        self.json_titles: List[str] = []
        self._accounts = list(accounts)
        # purchased_asset of every watched account at each send
        self.ledger_at_send: List[List[Optional[str]]] = []

    @property
    def dest(self) -> str:
        return "@test"

    async def send_text(self, text: str) -> None:
        self.texts.append(text)
        self.ledger_at_send.append([a.purchased_asset for a in self._accounts])

    async def notify_json(self, title: str, obj: Any) -> None:
        self.json_titles.append(title)

    async def close(self) -> None:
        pass

    def snapshot(self) -> dict:
        return {"sent": len(self.texts)}

    def starting(self, prefix: str) -> List[str]:
        return [t for t in self.texts if t.startswith(prefix)]


class ScriptedResolver:
    """Returns scripted results in order, then repeats the last one."""

    def __init__(self, script: Sequence[Scripted], journal: Optional[List[tuple]] = None) -> None:
        self._script = list(script)
        self.calls: List[tuple[str, str]] = []
        self.journal = journal if journal is not None else []

    async def resolve(self, identity: str, api_key: str = "") -> Optional[AssetDescriptor]:
        self.calls.append((identity, api_key))
        self.journal.append(("resolve", api_key))
        idx = min(len(self.calls), len(self._script)) - 1
        result = self._script[idx] if self._script else None
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingExecutor:
    """Succeeds unless the account name is in ``fail_for`` (or a failure is queued)."""

    def __init__(self, journal: Optional[List[tuple]] = None) -> None:
        self.calls: List[tuple[str, str, Decimal]] = []
        self.fail_for: set[str] = set()
        self.queued_failures: List[BaseException] = []
        self.journal = journal if journal is not None else []

    async def execute(self, account: FundingAccount, asset: AssetDescriptor, spend_eth: Decimal) -> TxConfirmation:
        self.calls.append((account.name, asset.address, spend_eth))
        self.journal.append(("execute", account.api_key))
        if self.queued_failures:
            raise self.queued_failures.pop(0)
        if account.name in self.fail_for:
            raise ExecutionError(f"insufficient funds for {account.name}")
        return TxConfirmation(tx_hash="0x" + "ab" * 32, block_number=1)

    async def check_receipt(self, tx_hash: str) -> Optional[TxConfirmation]:
        return None


async def no_sleep(_seconds: float) -> None:
    return None


def make_account(name: str = "Wallet1", spend: str = "0.05", key: str = KEY_1) -> FundingAccount:
    return FundingAccount(name=name, api_key=f"api-{name}", private_key=key, spend_eth=Decimal(spend))


@pytest.fixture
def coin_a() -> AssetDescriptor:
    return AssetDescriptor(address=COIN_A, symbol="JESSE")


@pytest.fixture
def two_accounts() -> List[FundingAccount]:
    return [make_account("Wallet1", "0.05", KEY_1), make_account("Wallet2", "0.009", KEY_2)]


# ──────────────────────────────────────────────────────────────
# In-memory chain for the live executor
# ──────────────────────────────────────────────────────────────

class FakeEth:
    """``landed_status`` is what a later receipt lookup sees (None = unmined)."""

    def __init__(self, *, receipt_status: int = 1, time_out: bool = False) -> None:
        self.max_priority_fee = 1_000_000
        self.sent: List[bytes] = []
        self.receipt_lookups: List[str] = []
        self.landed_status: Optional[int] = None
        self._receipt_status = receipt_status
        self.time_out = time_out

    def get_transaction_count(self, address: str, block: str) -> int:
        assert block == "pending"
        return 7 + len(self.sent)

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return 150_000

    def get_block(self, ident: str) -> Dict[str, Any]:
        return {"baseFeePerGas": 10_000_000}

    def send_raw_transaction(self, raw: bytes) -> bytes:
        self.sent.append(bytes(raw))
        return bytes.fromhex(SWAP_HASH[2:])

    def wait_for_transaction_receipt(self, tx_hash: bytes, timeout: float) -> Dict[str, Any]:
        if self.time_out:
            raise TimeExhausted("no receipt")
        return {"status": self._receipt_status, "blockNumber": 123}

    def get_transaction_receipt(self, tx_hash: str) -> Dict[str, Any]:
        self.receipt_lookups.append(tx_hash)
        if self.landed_status is None:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return {"status": self.landed_status, "blockNumber": 124}


class QuotedExecutor(ZoraTradeExecutor):
    """Serves a canned quote and records the request body."""

    def __init__(self, eth: FakeEth, quote: Any = QUOTE) -> None:
        super().__init__(
            api_url="https://quotes.example",
            w3=SimpleNamespace(eth=eth),
            chain_id=8453,
            slippage=0.6,
            dry_run=False,
        )
        self._quote = quote
        self.requests: List[tuple[str, Dict[str, Any]]] = []

    async def _fetch_quote(self, api_key: str, body: Dict[str, Any]) -> Any:
        self.requests.append((api_key, body))
        return self._quote
