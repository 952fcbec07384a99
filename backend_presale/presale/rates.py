"""
Exchange rates, payment bounds and the presale window.

Pure configuration: maps a payment asset (SOL, USDT, USDC) to its CGT rate and
accepted [min, max] payment range. All arithmetic is Decimal; base-unit
conversion truncates toward zero.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
import time
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from backend_presale.core.exceptions import (
    InvalidAmountError,
    InvalidAssetError,
    MalformedConfigError,
)


class AssetKind(str, enum.Enum):
    NATIVE = "native"
    TOKEN = "token"


@dataclass(frozen=True)
class AssetSpec:
    """A payment asset: the native coin, or an SPL token identified by mint."""

    symbol: str
    kind: AssetKind
    decimals: int
    mint: str | None = None

    def __post_init__(self) -> None:
        if self.kind is AssetKind.TOKEN and not self.mint:
            raise MalformedConfigError(f"token asset {self.symbol} needs a mint address")
        if self.decimals < 0:
            raise MalformedConfigError(f"asset {self.symbol} decimals must be >= 0")

    @property
    def is_native(self) -> bool:
        return self.kind is AssetKind.NATIVE

    def to_base_units(self, amount: Decimal) -> int:
        return to_base_units(amount, self.decimals)


@dataclass(frozen=True)
class RateEntry:
    reward_per_unit: Decimal
    min_units: Decimal
    max_units: Decimal

    def __post_init__(self) -> None:
        if self.reward_per_unit <= 0:
            raise MalformedConfigError("reward_per_unit must be > 0")
        if self.min_units > self.max_units:
            raise MalformedConfigError("min_units must be <= max_units")

    def contains(self, amount: Decimal) -> bool:
        return self.min_units <= amount <= self.max_units


def to_base_units(amount: Decimal, decimals: int) -> int:
    """floor(amount * 10^decimals) for non-negative amounts; never rounds up."""
    scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def parse_amount(raw: Any) -> Decimal:
    """
    Parse a client-supplied amount (JSON number or string) into a positive Decimal.
    Floats go through str() so 0.1 stays 0.1 rather than its binary expansion.
    """
    if isinstance(raw, bool) or raw is None:
        raise InvalidAmountError()
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError() from e
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError()
    return amount


class ExchangeRateTable:
    """Asset symbol → (AssetSpec, RateEntry). Symbols are case-insensitive."""

    def __init__(self, entries: dict[str, tuple[AssetSpec, RateEntry]]) -> None:
        if not entries:
            raise MalformedConfigError("at least one payment asset must be configured")
        self._entries = {symbol.upper(): entry for symbol, entry in entries.items()}

    @classmethod
    def from_settings(cls, settings: Any) -> "ExchangeRateTable":
        entries: dict[str, tuple[AssetSpec, RateEntry]] = {}
        for cfg in settings.assets:
            spec = AssetSpec(
                symbol=cfg.symbol,
                kind=AssetKind.NATIVE if cfg.mint is None else AssetKind.TOKEN,
                decimals=cfg.decimals,
                mint=cfg.mint,
            )
            entries[cfg.symbol] = (
                spec,
                RateEntry(reward_per_unit=cfg.rate, min_units=cfg.min_units, max_units=cfg.max_units),
            )
        return cls(entries)

    def symbols(self) -> list[str]:
        return list(self._entries)

    def asset(self, symbol: str) -> AssetSpec:
        return self._lookup(symbol)[0]

    def rate(self, symbol: str) -> RateEntry:
        return self._lookup(symbol)[1]

    def _lookup(self, symbol: str) -> tuple[AssetSpec, RateEntry]:
        entry = self._entries.get((symbol or "").strip().upper())
        if entry is None:
            raise InvalidAssetError()
        return entry

    def check_amount(self, symbol: str, amount: Decimal) -> None:
        """Raise InvalidAmountError when amount is outside the asset's [min, max]."""
        spec, rate = self._lookup(symbol)
        if not rate.contains(amount):
            raise InvalidAmountError(
                f"{spec.symbol} amount must be between {rate.min_units} and {rate.max_units}"
            )

    def reward_for(self, symbol: str, amount: Decimal) -> Decimal:
        """CGT owed for paying amount of symbol; exact Decimal product."""
        return amount * self.rate(symbol).reward_per_unit

    def as_public_table(self) -> dict[str, dict[str, float]]:
        """GET /api/rates payload: {SYMBOL: {rate, min, max}}."""
        return {
            symbol: {
                "rate": float(rate.reward_per_unit),
                "min": float(rate.min_units),
                "max": float(rate.max_units),
            }
            for symbol, (_, rate) in self._entries.items()
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Wall-clock unix time in milliseconds, the unit of request timestamps."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PresaleWindow:
    """Active iff start <= now <= end (inclusive both ends)."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise MalformedConfigError("presale start must be before presale end")

    @classmethod
    def from_millis(cls, start_ms: int, end_ms: int) -> "PresaleWindow":
        return cls(
            start=datetime.fromtimestamp(start_ms / 1000, tz=timezone.utc),
            end=datetime.fromtimestamp(end_ms / 1000, tz=timezone.utc),
        )

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.start <= now <= self.end

    def phase(self, now: datetime | None = None) -> str:
        now = now or utc_now()
        if now < self.start:
            return "upcoming"
        if now > self.end:
            return "ended"
        return "active"

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        """Presale status payload; timeLeft in ms until start (upcoming) or end (active)."""
        now = now or utc_now()
        phase = self.phase(now)
        if phase == "upcoming":
            message = "Presale has not started yet"
            time_left = self.start - now
        elif phase == "active":
            message = "Presale is active"
            time_left = self.end - now
        else:
            message = "Presale has ended"
            time_left = None
        return {
            "success": True,
            "status": phase,
            "message": message,
            "timeLeft": int(time_left.total_seconds() * 1000) if time_left is not None else 0,
        }
