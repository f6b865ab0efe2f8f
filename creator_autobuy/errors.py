"""Error taxonomy for the autobuy engine.

``ConfigError`` is fatal and only raised before the engine starts.
``TargetLookupError`` and ``ExecutionError`` are recoverable: the retry loop
reports them and spends one attempt. ``NotificationError`` never leaves the
notifier.
"""
from __future__ import annotations

from typing import Optional


class ConfigError(ValueError):
    """Malformed or missing configuration."""


class TargetLookupError(LookupError):
    """The target resolver could not tell whether an asset exists."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ExecutionError(RuntimeError):
    """A purchase attempt failed; carries the upstream message.

    ``unconfirmed`` is set when a swap was broadcast but its outcome is not
    known yet (receipt wait timed out); ``tx_hash`` then names that swap.
    """

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, unconfirmed: bool = False) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.unconfirmed = unconfirmed


class NotificationError(RuntimeError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"telegram_error status={status} body={body[:400]}")
        self.status = int(status)
        self.body = body
