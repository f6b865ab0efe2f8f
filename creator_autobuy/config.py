"""Configuration for the creator coin autobuy engine.

Values come from an env file (loaded first so argparse defaults see it),
then the process environment, then CLI flags. Everything is validated here;
the engine never sees a malformed account.
"""
from __future__ import annotations

import argparse
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import ConfigError
from .models import FundingAccount


DEFAULT_ENV_FILE = ".env.autobuy.local"

ZORA_API_URL = "https://api-sdk.zora.engineering"
BASE_CHAIN_ID = 8453
BASESCAN_TX_URL = "https://basescan.org/tx/"
CREATOR_COIN_FACTORY = "0x777777751622c0d3258f214F9DF38E35BF45baF3"

RESOLVER_CHOICES = ("profile", "events")

# Default spend per account slot when AUTOBUY_ETH_<n> is unset.
_FIRST_ACCOUNT_SPEND = "0.05"
_OTHER_ACCOUNT_SPEND = "0.009"

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Upper bound on numbered account slots scanned in the environment.
_MAX_ACCOUNT_SLOTS = 32


# ──────────────────────────────────────────────────────────────
# Env file
# ──────────────────────────────────────────────────────────────

def _strip_quotes(value: str) -> str:
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def parse_env_file(path: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    target = Path(path)
    if not target.is_file():
        return values
    for raw in target.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.lower().startswith("export "):
            line = line[7:].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        values[key] = _strip_quotes(value)
    return values


def load_env_file(path: str, *, override: bool = False) -> Dict[str, str]:
    """Copy env file values into ``os.environ``; existing variables win."""
    parsed = parse_env_file(path)
    for key, value in parsed.items():
        if override or key not in os.environ:
            os.environ[key] = value
    return parsed


def env_str(name: str, default: str = "") -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    text = str(raw).strip()
    return text if text else default


# ──────────────────────────────────────────────────────────────
# Normalisation helpers
# ──────────────────────────────────────────────────────────────

def normalize_private_key(raw: str, *, label: str = "PRIVATE_KEY") -> str:
    key = str(raw or "").strip()
    if not key:
        raise ConfigError(f"missing required env: {label}")
    if not key.lower().startswith("0x"):
        key = f"0x{key}"
    key = "0x" + key[2:]
    if not _PRIVATE_KEY_RE.match(key):
        raise ConfigError(f"{label} must be a 0x-prefixed 64-hex string")
    return key


def parse_spend(raw: str, *, label: str) -> Decimal:
    text = str(raw or "").strip()
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ConfigError(f"{label} must be a decimal ETH amount, got {text!r}") from None
    if not value.is_finite() or value <= 0:
        raise ConfigError(f"{label} must be positive, got {text!r}")
    return value


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(str(value or "").strip()))


def _first_env(*names: str) -> str:
    for name in names:
        value = env_str(name)
        if value:
            return value
    return ""


def load_accounts_from_env() -> List[FundingAccount]:
    """Numbered slots ``PRIVATE_KEY_1``.. first, else the single-wallet vars."""
    accounts: List[FundingAccount] = []
    for slot in range(1, _MAX_ACCOUNT_SLOTS + 1):
        raw_key = env_str(f"PRIVATE_KEY_{slot}")
        if not raw_key:
            if slot == 1:
                break
            continue
        api_key = env_str(f"ZORA_API_KEY_{slot}")
        if not api_key:
            raise ConfigError(f"missing required env: ZORA_API_KEY_{slot}")
        default_spend = _FIRST_ACCOUNT_SPEND if slot == 1 else _OTHER_ACCOUNT_SPEND
        accounts.append(
            FundingAccount(
                name=env_str(f"WALLET_NAME_{slot}", f"Wallet{slot}"),
                api_key=api_key,
                private_key=normalize_private_key(raw_key, label=f"PRIVATE_KEY_{slot}"),
                spend_eth=parse_spend(
                    env_str(f"AUTOBUY_ETH_{slot}", default_spend),
                    label=f"AUTOBUY_ETH_{slot}",
                ),
            )
        )
    if accounts:
        return accounts

    raw_key = env_str("PRIVATE_KEY")
    if not raw_key:
        return []
    api_key = env_str("ZORA_API_KEY")
    if not api_key:
        raise ConfigError("missing required env: ZORA_API_KEY")
    return [
        FundingAccount(
            name=env_str("WALLET_NAME", "MainWallet"),
            api_key=api_key,
            private_key=normalize_private_key(raw_key),
            spend_eth=parse_spend(env_str("AUTOBUY_ETH", _FIRST_ACCOUNT_SPEND), label="AUTOBUY_ETH"),
        )
    ]


# ──────────────────────────────────────────────────────────────
# Config dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class AutobuyConfig:
    """Runtime configuration, validated by ``validate_config``."""

    env_file: str
    target: str
    telegram_token: str = field(repr=False)
    telegram_dest: str
    accounts: List[FundingAccount]

    resolver: str = "profile"
    dry_run: bool = True
    rpc_url: str = ""
    chain_id: int = BASE_CHAIN_ID
    zora_api_url: str = ZORA_API_URL
    explorer_tx_url: str = BASESCAN_TX_URL
    factory_address: str = CREATOR_COIN_FACTORY

    # ── Scheduling ──
    tick_seconds: float = 30.0
    max_attempts: int = 10
    retry_delay_seconds: float = 2.0
    status_every_ticks: int = 30
    max_tick_faults: int = 0

    # ── Trading ──
    slippage: float = 0.6

    # ── Chain events ──
    event_poll_seconds: float = 2.0
    event_lookback_blocks: int = 0

    # ── Timeouts ──
    http_timeout_seconds: float = 15.0
    receipt_timeout_seconds: float = 180.0

    log_level: str = "INFO"


def validate_config(cfg: AutobuyConfig) -> AutobuyConfig:
    if not cfg.target:
        raise ConfigError("missing required env: TARGET_WALLET")
    if not cfg.telegram_token:
        raise ConfigError("missing required env: TELEGRAM_BOT_TOKEN")
    if not cfg.telegram_dest:
        raise ConfigError("missing required env: TELEGRAM_CHANNEL or TELEGRAM_CHAT_ID")
    if not cfg.accounts:
        raise ConfigError("no funding accounts configured (PRIVATE_KEY_1 or PRIVATE_KEY)")
    seen_keys: set[str] = set()
    for account in cfg.accounts:
        fingerprint = account.private_key.lower()
        if fingerprint in seen_keys:
            raise ConfigError(f"duplicate private key for account {account.name}")
        seen_keys.add(fingerprint)
    if cfg.resolver not in RESOLVER_CHOICES:
        raise ConfigError(f"resolver must be one of {RESOLVER_CHOICES}, got {cfg.resolver!r}")
    if cfg.resolver == "events":
        if not is_address(cfg.target):
            raise ConfigError("events resolver needs TARGET_WALLET to be a 0x address")
        if not is_address(cfg.factory_address):
            raise ConfigError("CREATOR_COIN_FACTORY must be a 0x address")
        if not cfg.rpc_url:
            raise ConfigError("missing required env: BASE_HTTP_RPC (events resolver)")
    if not cfg.dry_run and not cfg.rpc_url:
        raise ConfigError("missing required env: BASE_HTTP_RPC (live trading)")
    if cfg.tick_seconds <= 0:
        raise ConfigError("tick interval must be positive")
    if cfg.max_attempts < 1:
        raise ConfigError("max attempts must be >= 1")
    if cfg.retry_delay_seconds < 0:
        raise ConfigError("retry delay must be >= 0")
    if cfg.status_every_ticks < 1:
        raise ConfigError("status report interval must be >= 1 tick")
    if cfg.max_tick_faults < 0:
        raise ConfigError("max tick faults must be >= 0")
    if not 0 < cfg.slippage <= 1:
        raise ConfigError("slippage must be in (0, 1]")
    if cfg.event_poll_seconds <= 0:
        raise ConfigError("event poll interval must be positive")
    if cfg.event_lookback_blocks < 0:
        raise ConfigError("event lookback must be >= 0")
    return cfg


def parse_args(argv: Optional[Sequence[str]] = None) -> AutobuyConfig:
    """Build and validate AutobuyConfig from env file + env + CLI."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=os.environ.get("ENV_FILE", DEFAULT_ENV_FILE))
    pre_args, _ = pre.parse_known_args(argv)
    env_file = str(pre_args.env_file).strip() or DEFAULT_ENV_FILE
    load_env_file(env_file)

    p = argparse.ArgumentParser(
        description="creator coin autobuy: watch a target, buy its coin once per wallet"
    )
    p.add_argument("--env-file", default=env_file, help=f"path to env file (default: {DEFAULT_ENV_FILE})")
    p.add_argument("--target", default=env_str("TARGET_WALLET"),
                   help="target wallet address or profile handle")
    p.add_argument("--resolver", choices=RESOLVER_CHOICES,
                   default=env_str("AUTOBUY_RESOLVER", "profile"),
                   help="profile = poll the Zora profile API, events = watch factory logs")
    p.add_argument("--dry-run", action=argparse.BooleanOptionalAction,
                   default=env_str("AUTOBUY_DRY_RUN", "1").lower() not in {"0", "false", "no", "n", "off"})
    p.add_argument("--rpc-url", default=env_str("BASE_HTTP_RPC"))
    p.add_argument("--chain-id", type=int, default=env_str("CHAIN_ID", str(BASE_CHAIN_ID)))
    p.add_argument("--zora-api-url", default=env_str("ZORA_API_URL", ZORA_API_URL))
    p.add_argument("--explorer-tx-url", default=env_str("EXPLORER_TX_URL", BASESCAN_TX_URL))
    p.add_argument("--factory", default=env_str("CREATOR_COIN_FACTORY", CREATOR_COIN_FACTORY))
    p.add_argument("--telegram-token", default=env_str("TELEGRAM_BOT_TOKEN"))
    p.add_argument("--telegram-dest", default=_first_env("TELEGRAM_CHANNEL", "TELEGRAM_CHAT_ID"),
                   help="channel username, @name or numeric chat id")
    p.add_argument("--tick-seconds", type=float,
                   default=env_str("AUTOBUY_TICK_SECONDS", "30"))
    p.add_argument("--max-attempts", type=int,
                   default=env_str("AUTOBUY_MAX_ATTEMPTS", "10"))
    p.add_argument("--retry-delay-seconds", type=float,
                   default=env_str("AUTOBUY_RETRY_DELAY_SECONDS", "2"))
    p.add_argument("--status-every-ticks", type=int,
                   default=env_str("AUTOBUY_STATUS_EVERY_TICKS", "30"))
    p.add_argument("--max-tick-faults", type=int,
                   default=env_str("MAX_TICK_FAULTS", "0"),
                   help="consecutive failed ticks before the run gives up (0 = never)")
    p.add_argument("--slippage", type=float,
                   default=env_str("AUTOBUY_SLIPPAGE", "0.6"),
                   help="slippage tolerance as a fraction (0.6 means 60%%)")
    p.add_argument("--event-poll-seconds", type=float,
                   default=env_str("EVENT_POLL_SECONDS", "2"))
    p.add_argument("--event-lookback-blocks", type=int,
                   default=env_str("EVENT_LOOKBACK_BLOCKS", "0"))
    p.add_argument("--http-timeout-seconds", type=float,
                   default=env_str("HTTP_TIMEOUT_SECONDS", "15"))
    p.add_argument("--receipt-timeout-seconds", type=float,
                   default=env_str("RECEIPT_TIMEOUT_SECONDS", "180"))
    p.add_argument("--log-level", default=env_str("AUTOBUY_LOG_LEVEL", "INFO"))
    args = p.parse_args(argv)

    cfg = AutobuyConfig(
        env_file=args.env_file,
        target=str(args.target or "").strip(),
        telegram_token=str(args.telegram_token or "").strip(),
        telegram_dest=str(args.telegram_dest or "").strip(),
        accounts=load_accounts_from_env(),
        resolver=args.resolver,
        dry_run=bool(args.dry_run),
        rpc_url=str(args.rpc_url or "").strip(),
        chain_id=args.chain_id,
        zora_api_url=str(args.zora_api_url).rstrip("/"),
        explorer_tx_url=args.explorer_tx_url,
        factory_address=str(args.factory).strip(),
        tick_seconds=args.tick_seconds,
        max_attempts=args.max_attempts,
        retry_delay_seconds=args.retry_delay_seconds,
        status_every_ticks=args.status_every_ticks,
        max_tick_faults=args.max_tick_faults,
        slippage=args.slippage,
        event_poll_seconds=args.event_poll_seconds,
        event_lookback_blocks=args.event_lookback_blocks,
        http_timeout_seconds=args.http_timeout_seconds,
        receipt_timeout_seconds=args.receipt_timeout_seconds,
        log_level=str(args.log_level).upper(),
    )
    return validate_config(cfg)
