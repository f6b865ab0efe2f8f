"""Account ledger — the at-most-once purchase gate.

State lives on ``FundingAccount.purchased_asset``; this class only decides
and records. The record is in memory: a crash between a confirmed swap and
``record_success`` followed by a restart can buy the same coin again.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict

from .models import AssetDescriptor, FundingAccount

log = logging.getLogger(__name__)


class AccountLedger:
    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}

    @staticmethod
    def should_attempt(account: FundingAccount, asset: AssetDescriptor) -> bool:
        return not asset.same_asset(account.purchased_asset)

    @staticmethod
    def record_success(account: FundingAccount, asset: AssetDescriptor) -> None:
        account.purchased_asset = asset.address
        log.info("%s recorded purchase of %s (%s)", account.name, asset.address, asset.symbol)

    def guard(self, account: FundingAccount) -> asyncio.Lock:
        """Lock held around execute-then-record for one account."""
        lock = self._locks.get(id(account))
        if lock is None:
            lock = self._locks[id(account)] = asyncio.Lock()
        return lock
