"""Retry scheduler — bounded resolve-then-buy loop for one account."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import ExecutionError
from .executor import PurchaseExecutor
from .ledger import AccountLedger
from .models import AssetDescriptor, FundingAccount, TxConfirmation
from .notifier import Notifier, md_escape
from .resolver import TargetResolver

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class AttemptOutcome(str, Enum):
    BOUGHT = "bought"
    ABSENT = "absent"
    ALREADY_OWNED = "already_owned"
    FAILED = "failed"


class RetryScheduler:
    """Runs attempts for one account until a purchase lands or the bound is hit.

    Each attempt re-queries the resolver; nothing is cached between attempts,
    so a coin that appears mid-loop is picked up on the next attempt. Lookup
    and execution errors are reported and cost one attempt, they never end
    the loop early.

    A swap whose receipt wait timed out stays pending for its account: later
    attempts poll that receipt instead of broadcasting another swap, until it
    confirms (recorded as the purchase) or reverts (cleared, buying resumes).
    """

    def __init__(
        self,
        *,
        target: str,
        resolver: TargetResolver,
        executor: PurchaseExecutor,
        ledger: AccountLedger,
        notifier: Notifier,
        retry_delay_seconds: float = 2.0,
        explorer_tx_url: str = "https://basescan.org/tx/",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._target = target
        self._resolver = resolver
        self._executor = executor
        self._ledger = ledger
        self._notifier = notifier
        self._retry_delay = float(retry_delay_seconds)
        self._explorer_tx_url = explorer_tx_url
        self._sleep = sleep

        self._unconfirmed: Dict[int, Tuple[AssetDescriptor, str]] = {}

        self.attempts = 0
        self.failures = 0

    async def attempt_until_success(self, account: FundingAccount, max_attempts: int = 10) -> bool:
        for attempt in range(1, max_attempts + 1):
            outcome = await self.attempt_once(account)
            log.debug("%s attempt %d/%d: %s", account.name, attempt, max_attempts, outcome.value)
            if outcome is AttemptOutcome.BOUGHT:
                return True
            if attempt < max_attempts:
                await self._sleep(self._retry_delay)
        return False

    async def attempt_once(self, account: FundingAccount) -> AttemptOutcome:
        self.attempts += 1
        try:
            asset = await self._resolver.resolve(self._target, account.api_key)
        except Exception as exc:
            await self._report_failure(account, exc)
            return AttemptOutcome.FAILED
        if asset is None:
            return AttemptOutcome.ABSENT
        if not self._ledger.should_attempt(account, asset):
            return AttemptOutcome.ALREADY_OWNED

        async with self._ledger.guard(account):
            # Another path may have bought it while we waited for the lock.
            if not self._ledger.should_attempt(account, asset):
                return AttemptOutcome.ALREADY_OWNED
            settled = await self._settle_unconfirmed(account)
            if settled is not None:
                return settled
            spend = account.spend_eth
            await self._notifier.send_text(
                f"🔎 {md_escape(account.name)}: creator coin found *{md_escape(asset.symbol)}* `{asset.address}`"
            )
            await self._notifier.send_text(
                f"🤖 {md_escape(account.name)}: buying *{spend} ETH* → *{md_escape(asset.symbol)}*"
            )
            try:
                confirmation = await self._executor.execute(account, asset, spend)
            except Exception as exc:
                if isinstance(exc, ExecutionError) and exc.unconfirmed and exc.tx_hash:
                    self._unconfirmed[id(account)] = (asset, exc.tx_hash)
                await self._report_failure(account, exc)
                return AttemptOutcome.FAILED
            self._ledger.record_success(account, asset)

        await self._notifier.send_text(self._success_text(account, asset, confirmation))
        return AttemptOutcome.BOUGHT

    async def _settle_unconfirmed(self, account: FundingAccount) -> Optional[AttemptOutcome]:
        """Resolve an earlier timed-out swap. None means buying may proceed.

        Caller holds the account guard.
        """
        entry = self._unconfirmed.get(id(account))
        if entry is None:
            return None
        asset, tx_hash = entry
        try:
            confirmation = await self._executor.check_receipt(tx_hash)
        except ExecutionError as exc:
            # reverted: nothing was bought
            del self._unconfirmed[id(account)]
            log.warning("%s pending swap %s failed: %s", account.name, tx_hash, exc)
            return None
        except Exception as exc:
            await self._report_failure(account, exc)
            return AttemptOutcome.FAILED
        if confirmation is None:
            await self._report_failure(
                account, ExecutionError(f"swap {tx_hash} still unconfirmed, not buying again", tx_hash=tx_hash)
            )
            return AttemptOutcome.FAILED
        del self._unconfirmed[id(account)]
        self._ledger.record_success(account, asset)
        await self._notifier.send_text(self._success_text(account, asset, confirmation))
        return AttemptOutcome.BOUGHT

    def pending_tx(self, account: FundingAccount) -> Optional[str]:
        entry = self._unconfirmed.get(id(account))
        return entry[1] if entry else None

    def _success_text(self, account: FundingAccount, asset: AssetDescriptor, confirmation: TxConfirmation) -> str:
        name = md_escape(account.name)
        if confirmation.dry_run:
            return f"✅ {name}: [dry-run] purchase of *{md_escape(asset.symbol)}* simulated, nothing sent"
        return f"✅ {name}: purchase succeeded!\nTx: {self._explorer_tx_url}{confirmation.tx_hash}"

    async def _report_failure(self, account: FundingAccount, exc: BaseException) -> None:
        self.failures += 1
        message = str(exc) or type(exc).__name__
        log.warning("%s attempt failed: %s", account.name, message)
        await self._notifier.send_text(f"❌ {md_escape(account.name)} error: {md_escape(message)}")
