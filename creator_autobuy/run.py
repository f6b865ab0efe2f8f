"""Entry point — wires the autobuy engine and runs it to completion.

Architecture:
    tick ──→ MultiAccountSequencer ──→ RetryScheduler (wallet 1, then wallet 2, ...)
                                          │
                       resolve ←──────────┴──────────→ execute
           ProfileResolver (poll /profile)          ZoraTradeExecutor (quote + signed tx)
           EventResolver ← CreatorCoinWatcher       AccountLedger (once per coin)
                                  │
                                  └──wake──→ next tick runs early

    Every state change is reported through TelegramNotifier.

Usage:
    python -m creator_autobuy.run
    python -m creator_autobuy.run --resolver events --no-dry-run
"""
from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import traceback
from collections.abc import Awaitable, Callable
from typing import Any, Dict, List, Optional, Sequence

from .chain_events import CreatorCoinWatcher, make_web3
from .config import AutobuyConfig, parse_args
from .errors import ConfigError
from .executor import ZoraTradeExecutor
from .ledger import AccountLedger
from .models import CoinCreatedEvent, EngineContext
from .notifier import TelegramNotifier, md_escape
from .resolver import EventResolver, ProfileResolver
from .retry import RetryScheduler
from .sequencer import MultiAccountSequencer, TickFaultLimitReached

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAULTS = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str))
    sys.stdout.flush()


class AutobuyRunner:
    """Owns every component for one run."""

    def __init__(self, cfg: AutobuyConfig, *, notifier: Optional[TelegramNotifier] = None) -> None:
        self.cfg = cfg
        self.ctx = EngineContext(
            target=cfg.target,
            accounts=list(cfg.accounts),
            max_attempts=cfg.max_attempts,
            tick_seconds=cfg.tick_seconds,
            status_every_ticks=cfg.status_every_ticks,
        )
        self.notifier = notifier or TelegramNotifier(
            cfg.telegram_token,
            cfg.telegram_dest,
            timeout_seconds=cfg.http_timeout_seconds,
        )
        w3 = make_web3(cfg.rpc_url, cfg.http_timeout_seconds) if cfg.rpc_url else None

        self.watcher: Optional[CreatorCoinWatcher] = None
        self.profile_resolver: Optional[ProfileResolver] = None
        if cfg.resolver == "events":
            event_resolver = EventResolver(cfg.target)
            self.watcher = CreatorCoinWatcher(
                w3,
                cfg.factory_address,
                cfg.target,
                poll_seconds=cfg.event_poll_seconds,
                lookback_blocks=cfg.event_lookback_blocks,
            )
            event_resolver.bind_health(lambda: self.watcher.failure if self.watcher else None)
            self.watcher.on_event(self._on_chain_event(event_resolver))
            self.resolver: Any = event_resolver
        else:
            self.profile_resolver = ProfileResolver(cfg.zora_api_url, timeout_seconds=cfg.http_timeout_seconds)
            self.resolver = self.profile_resolver

        self.executor = ZoraTradeExecutor(
            api_url=cfg.zora_api_url,
            w3=w3,
            chain_id=cfg.chain_id,
            slippage=cfg.slippage,
            dry_run=cfg.dry_run,
            http_timeout_seconds=cfg.http_timeout_seconds,
            receipt_timeout_seconds=cfg.receipt_timeout_seconds,
        )
        self.ledger = AccountLedger()
        self.scheduler = RetryScheduler(
            target=cfg.target,
            resolver=self.resolver,
            executor=self.executor,
            ledger=self.ledger,
            notifier=self.notifier,
            retry_delay_seconds=cfg.retry_delay_seconds,
            explorer_tx_url=cfg.explorer_tx_url,
        )
        self.sequencer = MultiAccountSequencer(
            self.ctx,
            self.scheduler,
            self.notifier,
            on_fault=self._report_fault,
            max_consecutive_faults=cfg.max_tick_faults,
        )

    def _on_chain_event(self, event_resolver: EventResolver) -> Callable[[CoinCreatedEvent], Awaitable[None]]:
        async def handle(event: CoinCreatedEvent) -> None:
            if not event_resolver.publish(event):
                return
            await self.notifier.send_text(
                f"🚀 Target created a coin!\n• Coin: `{event.asset.address}`\n"
                f"• Name: {md_escape(event.asset.name)} | Symbol: {md_escape(event.asset.symbol)}"
            )
            self.ctx.wake.set()

        return handle

    async def _report_fault(self, exc: BaseException) -> None:
        await self.notifier.notify_json(
            "❌ Unhandled fault",
            {
                "error": exc,
                "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)[-3:],
                "sequencer": self.sequencer.snapshot(),
            },
        )

    def _start_text(self) -> str:
        mode = "dry-run" if self.cfg.dry_run else "LIVE"
        wallets = ", ".join(f"{md_escape(a.name)} ({a.spend_eth} ETH)" for a in self.ctx.accounts)
        return (
            f"👀 Bot started ({len(self.ctx.accounts)} wallet(s), {mode}, {self.cfg.resolver} resolver)\n"
            f"Target: `{self.cfg.target}`\nWallets: {wallets}"
        )

    async def run(self) -> int:
        _emit(
            {
                "event": "AUTOBUY_START",
                "env_file": self.cfg.env_file,
                "target": self.cfg.target,
                "resolver": self.cfg.resolver,
                "dry_run": self.cfg.dry_run,
                "accounts": [
                    {"name": a.name, "spend_eth": str(a.spend_eth), "has_api_key": bool(a.api_key)}
                    for a in self.ctx.accounts
                ],
                "tick_seconds": self.cfg.tick_seconds,
                "max_attempts": self.cfg.max_attempts,
                "retry_delay_seconds": self.cfg.retry_delay_seconds,
                "slippage": self.cfg.slippage,
                "chain_id": self.cfg.chain_id,
                "telegram_dest": self.notifier.dest,
            }
        )
        await self.notifier.send_text(self._start_text())

        tasks: List[asyncio.Task[Any]] = []
        if self.watcher is not None:
            tasks.append(asyncio.create_task(self.watcher.run(), name="chain-watcher"))

        exit_code = EXIT_FAULTS
        try:
            completed = await self.sequencer.run()
            exit_code = EXIT_OK if completed else EXIT_INTERRUPTED
        except TickFaultLimitReached as exc:
            log.error("giving up: %s", exc)
            await self.notifier.send_text(f"🛑 Bot stopping after repeated faults: {md_escape(str(exc))}")
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            _emit(
                {
                    "event": "AUTOBUY_STOP",
                    "exit_code": exit_code,
                    "sequencer": self.sequencer.snapshot(),
                    "resolver": self.resolver.snapshot(),
                    "executor": self.executor.snapshot(),
                    "watcher": self.watcher.snapshot() if self.watcher else None,
                    "notifier": self.notifier.snapshot(),
                }
            )
            await self.close()
        return exit_code

    async def close(self) -> None:
        await self.executor.close()
        if self.profile_resolver is not None:
            await self.profile_resolver.close()
        await self.notifier.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        cfg = parse_args(argv)
    except ConfigError as exc:
        _emit({"event": "AUTOBUY_FATAL", "error": str(exc), "where": "config"})
        return EXIT_CONFIG

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    async def _main() -> int:
        runner = AutobuyRunner(cfg)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, runner.sequencer.stop)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass
        return await runner.run()

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
