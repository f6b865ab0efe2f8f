"""Target resolvers — find the creator coin tied to the target identity.

Two interchangeable variants behind one protocol:

  ProfileResolver  polls the Zora profile API (pull)
  EventResolver    serves coins pushed by CreatorCoinWatcher (push)

``resolve`` returns ``None`` while no coin exists and raises
``TargetLookupError`` when it cannot tell.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

import aiohttp

from .errors import TargetLookupError
from .models import AssetDescriptor, CoinCreatedEvent

log = logging.getLogger(__name__)


class TargetResolver(Protocol):
    async def resolve(self, identity: str, api_key: str = "") -> Optional[AssetDescriptor]: ...


def parse_profile_payload(body: Any) -> Optional[AssetDescriptor]:
    """Extract ``profile.creatorCoin`` from a profile API response."""
    if not isinstance(body, dict):
        raise TargetLookupError("profile payload is not an object")
    profile = body.get("profile")
    if not isinstance(profile, dict):
        return None
    coin = profile.get("creatorCoin")
    if not isinstance(coin, dict):
        return None
    address = str(coin.get("address") or "").strip()
    if not address:
        return None
    return AssetDescriptor(
        address=address,
        symbol=str(coin.get("symbol") or "").strip() or "Unknown",
        name=str(coin.get("name") or "").strip(),
    )


# ──────────────────────────────────────────────────────────────
# Pull: Zora profile API
# ──────────────────────────────────────────────────────────────

class ProfileResolver:
    """GET /profile?identifier=<target> with the account's API key."""

    def __init__(self, api_url: str, *, timeout_seconds: float = 15.0) -> None:
        self._api_url = api_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self.lookups = 0
        self.errors = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def resolve(self, identity: str, api_key: str = "") -> Optional[AssetDescriptor]:
        self.lookups += 1
        headers = {"accept": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        session = await self._get_session()
        url = f"{self._api_url}/profile"
        try:
            async with session.get(url, params={"identifier": identity}, headers=headers) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    self.errors += 1
                    raise TargetLookupError(
                        f"Zora API error: {resp.status} {body[:400]}",
                        status=resp.status,
                    )
                payload = await resp.json(content_type=None)
        except TargetLookupError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.errors += 1
            raise TargetLookupError(f"profile lookup failed: {exc!r}") from exc
        return parse_profile_payload(payload)

    def snapshot(self) -> dict[str, Any]:
        return {"kind": "profile", "lookups": self.lookups, "errors": self.errors}


# ──────────────────────────────────────────────────────────────
# Push: factory events
# ──────────────────────────────────────────────────────────────

class EventResolver:
    """Answers from coins the chain watcher has pushed.

    Events land in a queue; ``resolve`` drains it and keeps the newest coin,
    so every account sees the same coin on its next attempt. Repeated
    deliveries of one coin are harmless, the ledger deduplicates.
    """

    def __init__(self, target: str) -> None:
        self._target = target.lower()
        self._queue: asyncio.Queue[AssetDescriptor] = asyncio.Queue()
        self._latest: Optional[AssetDescriptor] = None
        self._health: Callable[[], Optional[BaseException]] = lambda: None
        self.events_seen = 0
        self.events_ignored = 0

    def bind_health(self, check: Callable[[], Optional[BaseException]]) -> None:
        """Install a check returning the watcher's fatal error, if any."""
        self._health = check

    def publish(self, event: CoinCreatedEvent) -> bool:
        """Queue a decoded event; returns False when the creator is not the target."""
        if event.creator.lower() != self._target:
            self.events_ignored += 1
            return False
        self.events_seen += 1
        self._queue.put_nowait(event.asset)
        return True

    @property
    def latest(self) -> Optional[AssetDescriptor]:
        return self._latest

    async def resolve(self, identity: str, api_key: str = "") -> Optional[AssetDescriptor]:
        while not self._queue.empty():
            self._latest = self._queue.get_nowait()
        if self._latest is None:
            failure = self._health()
            if failure is not None:
                raise TargetLookupError(f"chain watcher stopped: {failure!r}")
        return self._latest

    def snapshot(self) -> dict[str, Any]:
        return {
            "kind": "events",
            "events_seen": self.events_seen,
            "events_ignored": self.events_ignored,
            "latest": self._latest.address if self._latest else None,
        }
