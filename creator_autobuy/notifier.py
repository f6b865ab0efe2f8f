"""Telegram notifier — the operator's view of the engine.

The engine only needs ``send_text``. Delivery is fire-and-forget: transport
failures are logged and never reach the caller.
"""
from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, List, Optional, Protocol

import aiohttp

from .errors import NotificationError

log = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

# Telegram rejects messages above 4096 chars; stay well under it.
CHUNK_CHARS = 3500


class Notifier(Protocol):
    async def send_text(self, text: str) -> None: ...


def split_chunks(text: str, limit: int = CHUNK_CHARS) -> List[str]:
    """Slice *text* into ordered pieces of at most *limit* characters."""
    if limit <= 0:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text]
    return [text[i:i + limit] for i in range(0, len(text), limit)]


def normalize_dest(dest: str) -> str:
    """Chat ids (``-100…``) and ``@channel`` pass through; bare names get ``@``."""
    if not dest:
        return dest
    if dest.startswith("@") or dest.startswith("-100"):
        return dest
    return f"@{dest}"


def md_escape(text: str) -> str:
    """Escape Telegram legacy-Markdown control characters in free text."""
    out = str(text)
    for ch in ("\\", "_", "*", "`", "["):
        out = out.replace(ch, "\\" + ch)
    return out


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def safe_json_dumps(obj: Any, indent: Optional[int] = 2) -> str:
    return json.dumps(obj, default=_json_default, indent=indent, ensure_ascii=False)


class TelegramNotifier:
    """Sends Markdown messages to one Telegram chat or channel.

    Usage:
        notifier = TelegramNotifier(token, "@my_channel")
        await notifier.send_text("hello")
        await notifier.close()
    """

    def __init__(
        self,
        bot_token: str,
        dest: str,
        *,
        timeout_seconds: float = 15.0,
        chunk_chars: int = CHUNK_CHARS,
        api_base: str = TELEGRAM_API,
    ) -> None:
        self._bot_token = bot_token
        self._dest = normalize_dest(dest)
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._chunk_chars = chunk_chars
        self._api_base = api_base.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self.sent = 0
        self.failed = 0

    @property
    def dest(self) -> str:
        return self._dest

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post_message(self, text: str, *, markdown: bool = True) -> None:
        """One Bot API call. Raises on any failure."""
        session = await self._get_session()
        url = f"{self._api_base}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._dest,
            "text": text,
            "disable_web_page_preview": True,
        }
        if markdown:
            payload["parse_mode"] = "Markdown"
        async with session.post(url, json=payload) as resp:
            if resp.status != 200:
                raise NotificationError(resp.status, await resp.text())

    async def _deliver(self, text: str, *, markdown: bool = True) -> bool:
        try:
            await self._post_message(text, markdown=markdown)
        except Exception:
            self.failed += 1
            log.exception("telegram send failed")
            return False
        self.sent += 1
        return True

    async def send_text(self, text: str) -> None:
        chunks = split_chunks(text, self._chunk_chars)
        # a cut can land inside a Markdown entity, so split text goes out plain
        markdown = len(chunks) == 1
        for chunk in chunks:
            await self._deliver(chunk, markdown=markdown)

    async def notify_json(self, title: str, obj: Any) -> None:
        """Send *obj* as pretty JSON in a code block, chunked when long."""
        try:
            body = safe_json_dumps(obj)
        except (TypeError, ValueError) as exc:
            await self._deliver(f"⚠️ {title} serialization failed: {exc}")
            return
        if len(body) <= self._chunk_chars:
            await self._deliver(f"*{title}*\n```\n{body}\n```")
            return
        await self._deliver(f"*{title}* (chunked)")
        for part in split_chunks(body, self._chunk_chars):
            await self._deliver(f"```\n{part}\n```")

    def snapshot(self) -> dict[str, Any]:
        return {"dest": self._dest, "sent": self.sent, "failed": self.failed}
