"""Multi-account sequencer — drives every wallet on one shared tick.

Per tick, accounts run strictly in declared order: account N+1's retry loop
starts only after account N's loop has returned. This holds whatever the
host concurrency model is, because each loop is awaited to completion
before the next one is created.

States:  IDLE → SCHEDULING → ATTEMPTING (per account) → IDLE | ALL_SETTLED

Once every account holds a purchase the sequencer reports completion and
``run`` returns; no further tick fires.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Dict, Optional

from .models import EngineContext
from .notifier import Notifier, md_escape
from .retry import RetryScheduler

log = logging.getLogger(__name__)

FaultHandler = Callable[[BaseException], Awaitable[None]]


class SequencerState(str, Enum):
    IDLE = "idle"
    SCHEDULING = "scheduling"
    ATTEMPTING = "attempting"
    ALL_SETTLED = "all_settled"


class TickFaultLimitReached(RuntimeError):
    def __init__(self, faults: int, last: BaseException) -> None:
        super().__init__(f"{faults} consecutive tick faults, last: {last!r}")
        self.faults = faults
        self.last = last


class MultiAccountSequencer:
    def __init__(
        self,
        ctx: EngineContext,
        scheduler: RetryScheduler,
        notifier: Notifier,
        *,
        on_fault: Optional[FaultHandler] = None,
        max_consecutive_faults: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self._scheduler = scheduler
        self._notifier = notifier
        self._on_fault = on_fault
        # 0 = keep ticking through any number of faults
        self._max_faults = max(0, int(max_consecutive_faults))
        self._clock = clock
        self._stopping = False

        self.state = SequencerState.IDLE
        self.current_account: Optional[str] = None
        self.consecutive_faults = 0
        self.total_faults = 0

    def status_text(self) -> str:
        parts = [f"{md_escape(a.name)}={a.status_label()}" for a in self.ctx.accounts]
        return "⏳ Status: " + ", ".join(parts)

    async def run_tick(self) -> bool:
        """One tick over all accounts. Returns True once every account settled."""
        ctx = self.ctx
        self.state = SequencerState.SCHEDULING
        for account in ctx.pending():
            self.state = SequencerState.ATTEMPTING
            self.current_account = account.name
            bought = await self._scheduler.attempt_until_success(account, ctx.max_attempts)
            log.info("tick %d: %s %s", ctx.tick_count + 1, account.name,
                     "settled" if bought else "still pending")
        self.current_account = None

        ctx.tick_count += 1
        if ctx.tick_count % ctx.status_every_ticks == 0:
            await self._notifier.send_text(self.status_text())

        if ctx.all_settled:
            self.state = SequencerState.ALL_SETTLED
            await self._notifier.send_text("🎉 All wallets bought the coin. Shutting down.")
            return True
        self.state = SequencerState.IDLE
        return False

    async def _wait_for_tick(self, due_at: float) -> None:
        """Sleep until *due_at* unless ``ctx.wake`` fires first."""
        delay = due_at - self._clock()
        if delay > 0:
            try:
                await asyncio.wait_for(self.ctx.wake.wait(), timeout=delay)
                log.info("woken early by chain event")
            except asyncio.TimeoutError:
                pass
        self.ctx.wake.clear()

    def stop(self) -> None:
        """Finish the current tick, then return from ``run``."""
        self._stopping = True
        self.ctx.wake.set()

    async def run(self) -> bool:
        """Tick until all accounts settle (True) or ``stop`` is called (False).

        Exceptions escaping a tick go to ``on_fault`` and the next tick still
        fires. With ``max_consecutive_faults`` set, that many in a row raise
        ``TickFaultLimitReached``.
        """
        next_tick_at = self._clock() + self.ctx.tick_seconds
        while not self._stopping:
            await self._wait_for_tick(next_tick_at)
            if self._stopping:
                break
            started = self._clock()
            next_tick_at = started + self.ctx.tick_seconds
            try:
                done = await self.run_tick()
            except Exception as exc:
                self.state = SequencerState.IDLE
                self.consecutive_faults += 1
                self.total_faults += 1
                log.exception("tick fault (%d in a row)", self.consecutive_faults)
                if self._on_fault is not None:
                    await self._on_fault(exc)
                if self._max_faults and self.consecutive_faults >= self._max_faults:
                    raise TickFaultLimitReached(self.consecutive_faults, exc) from exc
                continue
            self.consecutive_faults = 0
            if done:
                return True
        return False

    def snapshot(self) -> Dict[str, Any]:
        out = self.ctx.snapshot()
        out.update(
            {
                "state": self.state.value,
                "current_account": self.current_account,
                "total_faults": self.total_faults,
            }
        )
        return out
