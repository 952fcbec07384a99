"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and the .env file.
- Provide defaults for optional settings (rates, bounds, timeouts).
- Expose one typed Settings object shared by the ledger client, presale rules,
  treasury disburser and API server.

Numeric values are parsed here; presence and key checks are left to
ServerConfigValidator so that every problem is reported the same way.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from backend_presale.config.env import (
    env_list,
    env_str,
    get_rpc_endpoints,
    load_presale_env,
)
from backend_presale.core.exceptions import MalformedConfigError

NATIVE_SYMBOL = "SOL"
NATIVE_DECIMALS = 9

USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
STABLECOIN_DECIMALS = 6

DEFAULT_PRESALE_START_MS = 1750819200000
DEFAULT_PRESALE_END_MS = 1756166400000

DEFAULT_MIN_TRANSFER = Decimal("1")
DEFAULT_MAX_TRANSFER = Decimal("1000000")
REPLAY_WINDOW_MS = 5 * 60 * 1000

DEFAULT_CONFIRM_TIMEOUT_SEC = 30.0
DEFAULT_CONFIRM_POLL_INTERVAL_SEC = 1.0
DEFAULT_RPC_RETRY_ATTEMPTS = 2
DEFAULT_RPC_RETRY_BACKOFF_SEC = 0.5
DEFAULT_RATE_LIMIT = "100 per 15 minutes"


def _env_decimal(name: str, default: str) -> Decimal:
    raw = env_str(name, default)
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise MalformedConfigError(f"{name} must be a number, got {raw!r}") from e
    if not value.is_finite():
        raise MalformedConfigError(f"{name} must be finite")
    return value


def _env_int(name: str, default: int) -> int:
    raw = env_str(name, str(default))
    try:
        return int(raw)
    except ValueError as e:
        raise MalformedConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = env_str(name, str(default))
    try:
        return float(raw)
    except ValueError as e:
        raise MalformedConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class AssetConfig:
    """One accepted payment asset: mint is None for the native coin."""

    symbol: str
    mint: str | None
    decimals: int
    rate: Decimal
    min_units: Decimal
    max_units: Decimal


def _default_assets() -> tuple[AssetConfig, ...]:
    stable_rate = "50"
    return (
        AssetConfig(
            symbol=NATIVE_SYMBOL,
            mint=None,
            decimals=NATIVE_DECIMALS,
            rate=_env_decimal("SOL_TO_CGT_RATE", "7500"),
            min_units=_env_decimal("MIN_SOL", "0.05"),
            max_units=_env_decimal("MAX_SOL", "133"),
        ),
        AssetConfig(
            symbol="USDT",
            mint=env_str("USDT_MINT_ADDRESS", USDT_MINT),
            decimals=STABLECOIN_DECIMALS,
            rate=_env_decimal("USDT_TO_CGT_RATE", stable_rate),
            min_units=_env_decimal("MIN_USDT", "1"),
            max_units=_env_decimal("MAX_USDT", "20000"),
        ),
        AssetConfig(
            symbol="USDC",
            mint=env_str("USDC_MINT_ADDRESS", USDC_MINT),
            decimals=STABLECOIN_DECIMALS,
            rate=_env_decimal("USDC_TO_CGT_RATE", stable_rate),
            min_units=_env_decimal("MIN_USDC", "1"),
            max_units=_env_decimal("MAX_USDC", "20000"),
        ),
    )


@dataclass(frozen=True)
class Settings:
    """Server configuration. Secret fields are excluded from repr."""

    cgt_mint: str = ""
    treasury_public_key: str = ""
    treasury_private_key: str = field(default="", repr=False)
    payment_receiver: str = ""
    cgt_decimals: int = 9
    assets: tuple[AssetConfig, ...] = ()
    presale_start_ms: int = DEFAULT_PRESALE_START_MS
    presale_end_ms: int = DEFAULT_PRESALE_END_MS
    rpc_endpoints: tuple[str, ...] = ()
    allowed_recipients: tuple[str, ...] = ()
    min_transfer_amount: Decimal = DEFAULT_MIN_TRANSFER
    max_transfer_amount: Decimal = DEFAULT_MAX_TRANSFER
    replay_window_ms: int = REPLAY_WINDOW_MS
    confirm_timeout_sec: float = DEFAULT_CONFIRM_TIMEOUT_SEC
    confirm_poll_interval_sec: float = DEFAULT_CONFIRM_POLL_INTERVAL_SEC
    rpc_retry_attempts: int = DEFAULT_RPC_RETRY_ATTEMPTS
    rpc_retry_backoff_sec: float = DEFAULT_RPC_RETRY_BACKOFF_SEC
    verification_db_url: str = ""
    transfer_api_secret: str = field(default="", repr=False)
    api_host: str = "127.0.0.1"
    api_port: int = 3001
    rate_limit: str = DEFAULT_RATE_LIMIT

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after loading .env)."""
        load_presale_env()
        return cls(
            cgt_mint=env_str("CGT_MINT_ADDRESS"),
            treasury_public_key=env_str("CGT_TREASURY_PUBLIC_KEY"),
            treasury_private_key=env_str("CGT_TREASURY_PRIVATE_KEY"),
            payment_receiver=env_str("PAYMENT_RECEIVER_WALLET"),
            cgt_decimals=_env_int("CGT_DECIMALS", 9),
            assets=_default_assets(),
            presale_start_ms=_env_int("PRESALE_START", DEFAULT_PRESALE_START_MS),
            presale_end_ms=_env_int("PRESALE_END", DEFAULT_PRESALE_END_MS),
            rpc_endpoints=tuple(get_rpc_endpoints()),
            allowed_recipients=tuple(env_list("ALLOWED_RECIPIENTS")),
            min_transfer_amount=_env_decimal("MIN_TRANSFER_AMOUNT", str(DEFAULT_MIN_TRANSFER)),
            max_transfer_amount=_env_decimal("MAX_TRANSFER_AMOUNT", str(DEFAULT_MAX_TRANSFER)),
            confirm_timeout_sec=_env_float("CONFIRM_TIMEOUT_SEC", DEFAULT_CONFIRM_TIMEOUT_SEC),
            confirm_poll_interval_sec=_env_float(
                "CONFIRM_POLL_INTERVAL_SEC", DEFAULT_CONFIRM_POLL_INTERVAL_SEC
            ),
            rpc_retry_attempts=_env_int("RPC_RETRY_ATTEMPTS", DEFAULT_RPC_RETRY_ATTEMPTS),
            rpc_retry_backoff_sec=_env_float("RPC_RETRY_BACKOFF_SEC", DEFAULT_RPC_RETRY_BACKOFF_SEC),
            verification_db_url=env_str("VERIFICATION_DB_URL"),
            transfer_api_secret=env_str("TRANSFER_API_SECRET"),
            api_host=env_str("API_HOST", "127.0.0.1"),
            api_port=_env_int("API_PORT", _env_int("PORT", 3001)),
            rate_limit=env_str("RATE_LIMIT", DEFAULT_RATE_LIMIT),
        )

    def asset(self, symbol: str) -> AssetConfig | None:
        symbol = (symbol or "").strip().upper()
        return next((a for a in self.assets if a.symbol == symbol), None)


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, read from the environment once."""
    return Settings.from_env()
