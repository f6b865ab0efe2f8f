"""Chain watcher — CreatorCoinCreated logs from the coin factory.

Subscribes once at startup and then follows the chain head with
``eth_getLogs``, filtered by factory address, event topic and the indexed
``caller`` (the target wallet). Delivery is at-least-once: a block range is
only advanced after its logs were fetched, so a failed poll is re-read.

Usage:
    watcher = CreatorCoinWatcher(w3, factory, target)
    watcher.on_event(resolver.publish)
    await watcher.run()
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, List, Optional, Union

from web3 import Web3

from .models import AssetDescriptor, CoinCreatedEvent

log = logging.getLogger(__name__)

CREATOR_COIN_CREATED_SIGNATURE = "CreatorCoinCreated(address,address,string,string)"

FACTORY_ABI: List[dict] = [
    {
        "type": "event",
        "name": "CreatorCoinCreated",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "caller", "type": "address"},
            {"indexed": False, "name": "coin", "type": "address"},
            {"indexed": False, "name": "name", "type": "string"},
            {"indexed": False, "name": "symbol", "type": "string"},
        ],
    }
]

# Keep single eth_getLogs calls within common provider range limits.
MAX_BLOCK_SPAN = 2000

# Consecutive failed polls before the watcher reports itself unhealthy.
UNHEALTHY_AFTER_ERRORS = 3

EventCallback = Callable[[CoinCreatedEvent], Union[None, bool, Awaitable[Any]]]


def event_topic() -> str:
    return Web3.to_hex(Web3.keccak(text=CREATOR_COIN_CREATED_SIGNATURE))


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def make_web3(rpc_url: str, timeout_seconds: float) -> Web3:
    provider = Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": max(1.0, float(timeout_seconds))})
    return Web3(provider)


class CreatorCoinWatcher:
    """Follows factory logs and hands matching creations to callbacks."""

    def __init__(
        self,
        w3: Any,
        factory_address: str,
        target: str,
        *,
        poll_seconds: float = 2.0,
        lookback_blocks: int = 0,
    ) -> None:
        self._w3 = w3
        self._factory = Web3.to_checksum_address(factory_address)
        self._target = target.lower()
        self._poll_seconds = poll_seconds
        self._lookback = max(0, int(lookback_blocks))
        self._event = w3.eth.contract(address=self._factory, abi=FACTORY_ABI).events.CreatorCoinCreated()
        self._topics = [event_topic(), address_topic(self._target)]
        self._callbacks: list[EventCallback] = []

        self.next_block: Optional[int] = None
        self.polls = 0
        self.poll_errors = 0
        self.consecutive_errors = 0
        self.events_delivered = 0
        self.last_error: Optional[BaseException] = None

    def on_event(self, cb: EventCallback) -> None:
        """Register callback: cb(event). May be sync or async."""
        self._callbacks.append(cb)

    @property
    def failure(self) -> Optional[BaseException]:
        """Last error once the watcher has failed repeatedly, else None."""
        if self.consecutive_errors >= UNHEALTHY_AFTER_ERRORS:
            return self.last_error
        return None

    async def run(self) -> None:
        log.info("watching %s for CreatorCoinCreated by %s (poll %.1fs)",
                 self._factory, self._target, self._poll_seconds)
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.poll_errors += 1
                self.consecutive_errors += 1
                self.last_error = exc
                log.exception("chain watcher poll error (%d in a row)", self.consecutive_errors)
            await asyncio.sleep(self._poll_seconds)

    async def poll_once(self) -> int:
        """Fetch and dispatch one block range; returns events dispatched."""
        events = await asyncio.to_thread(self._fetch_events)
        self.polls += 1
        self.consecutive_errors = 0
        for event in events:
            await self._dispatch(event)
        return len(events)

    # ── Internals ──

    def _fetch_events(self) -> List[CoinCreatedEvent]:
        latest = int(self._w3.eth.block_number)
        if self.next_block is None:
            self.next_block = max(0, latest - self._lookback)
        if latest < self.next_block:
            return []
        to_block = min(latest, self.next_block + MAX_BLOCK_SPAN - 1)
        raw_logs = self._w3.eth.get_logs(
            {
                "address": self._factory,
                "fromBlock": self.next_block,
                "toBlock": to_block,
                "topics": self._topics,
            }
        )
        events: List[CoinCreatedEvent] = []
        for raw in raw_logs:
            event = self._decode(raw)
            if event is not None:
                events.append(event)
        self.next_block = to_block + 1
        return events

    def _decode(self, raw_log: Any) -> Optional[CoinCreatedEvent]:
        try:
            decoded = self._event.process_log(raw_log)
        except Exception:
            log.warning("undecodable factory log in tx %s", raw_log.get("transactionHash"))
            return None
        args = decoded["args"]
        creator = str(args["caller"])
        # Re-check: not every provider applies topic filters.
        if creator.lower() != self._target:
            return None
        tx_hash = raw_log.get("transactionHash")
        if tx_hash is not None and not isinstance(tx_hash, str):
            tx_hash = Web3.to_hex(tx_hash)
        return CoinCreatedEvent(
            creator=creator,
            asset=AssetDescriptor(
                address=str(args["coin"]),
                symbol=str(args["symbol"] or "") or "Unknown",
                name=str(args["name"] or ""),
            ),
            block_number=int(raw_log.get("blockNumber") or 0),
            tx_hash=tx_hash or "",
        )

    async def _dispatch(self, event: CoinCreatedEvent) -> None:
        log.info("coin created by target: %s (%s) block=%d",
                 event.asset.address, event.asset.symbol, event.block_number)
        self.events_delivered += 1
        for cb in self._callbacks:
            try:
                result = cb(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("chain event callback error")

    def snapshot(self) -> dict[str, Any]:
        return {
            "factory": self._factory,
            "next_block": self.next_block,
            "polls": self.polls,
            "poll_errors": self.poll_errors,
            "events_delivered": self.events_delivered,
        }
