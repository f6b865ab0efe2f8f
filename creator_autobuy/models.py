"""Data models for the autobuy engine."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional


# ──────────────────────────────────────────────────────────────
# Assets
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class AssetDescriptor:
    """A resolved creator coin. Compared by address only."""
    address: str
    symbol: str = "Unknown"
    name: str = field(default="", compare=False)

    @property
    def key(self) -> str:
        return self.address.lower()

    def same_asset(self, other_address: Optional[str]) -> bool:
        if not other_address:
            return False
        return self.key == other_address.lower()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AssetDescriptor):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


@dataclass(frozen=True, slots=True)
class CoinCreatedEvent:
    """One decoded factory creation log."""
    creator: str
    asset: AssetDescriptor
    block_number: int = 0
    tx_hash: str = ""


@dataclass(frozen=True, slots=True)
class TxConfirmation:
    tx_hash: str
    block_number: Optional[int] = None
    dry_run: bool = False


# ──────────────────────────────────────────────────────────────
# Funding accounts
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class FundingAccount:
    """One configured wallet.

    ``purchased_asset`` is written only by ``AccountLedger.record_success``.
    """
    name: str
    api_key: str = field(repr=False)
    private_key: str = field(repr=False)
    spend_eth: Decimal
    purchased_asset: Optional[str] = None

    @property
    def settled(self) -> bool:
        return bool(self.purchased_asset)

    def status_label(self) -> str:
        return self.purchased_asset or "none"


# ──────────────────────────────────────────────────────────────
# Engine context
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class EngineContext:
    """Everything the sequencer owns for one run."""
    target: str
    accounts: List[FundingAccount]
    max_attempts: int = 10
    tick_seconds: float = 30.0
    status_every_ticks: int = 30
    tick_count: int = 0
    wake: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def all_settled(self) -> bool:
        return bool(self.accounts) and all(a.settled for a in self.accounts)

    def pending(self) -> List[FundingAccount]:
        return [a for a in self.accounts if not a.settled]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "tick_count": self.tick_count,
            "accounts": {a.name: a.purchased_asset for a in self.accounts},
        }
