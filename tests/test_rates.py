"""
Exchange rate table, amount parsing, base-unit truncation and presale window.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend_presale.core.exceptions import InvalidAmountError, InvalidAssetError, MalformedConfigError
from backend_presale.presale.rates import (
    AssetKind,
    AssetSpec,
    ExchangeRateTable,
    PresaleWindow,
    RateEntry,
    now_ms,
    parse_amount,
    to_base_units,
)


@pytest.fixture
def rates(settings) -> ExchangeRateTable:
    return ExchangeRateTable.from_settings(settings)


def test_reward_is_exact_decimal(rates):
    """0.1 SOL at 7500 is exactly 750, not 749.999..."""
    assert rates.reward_for("SOL", parse_amount(0.1)) == Decimal("750")
    assert rates.reward_for("usdt", parse_amount("12.5")) == Decimal("625")


def test_symbols_are_case_insensitive(rates):
    assert rates.asset("sol").is_native
    assert rates.asset(" Usdc ").mint == "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def test_unknown_asset_rejected(rates):
    with pytest.raises(InvalidAssetError):
        rates.asset("BTC")


def test_check_amount_bounds_inclusive(rates):
    rates.check_amount("SOL", Decimal("0.05"))
    rates.check_amount("SOL", Decimal("133"))
    with pytest.raises(InvalidAmountError, match="between"):
        rates.check_amount("SOL", Decimal("0.049"))
    with pytest.raises(InvalidAmountError):
        rates.check_amount("USDT", Decimal("20000.01"))


@pytest.mark.parametrize("raw", [None, True, "", "abc", "-1", 0, "NaN", "Infinity"])
def test_parse_amount_rejects_bad_values(raw):
    with pytest.raises(InvalidAmountError):
        parse_amount(raw)


def test_to_base_units_truncates_toward_zero():
    assert to_base_units(Decimal("1.5"), 6) == 1_500_000
    assert to_base_units(Decimal("0.1234567899"), 9) == 123_456_789
    assert to_base_units(Decimal("0.0000001"), 6) == 0


def test_rate_entry_invariants():
    with pytest.raises(MalformedConfigError):
        RateEntry(Decimal("0"), Decimal("1"), Decimal("2"))
    with pytest.raises(MalformedConfigError):
        RateEntry(Decimal("1"), Decimal("3"), Decimal("2"))


def test_token_asset_needs_mint():
    with pytest.raises(MalformedConfigError):
        AssetSpec("USDT", AssetKind.TOKEN, 6)


def test_public_table_shape(rates):
    table = rates.as_public_table()
    assert set(table) == {"SOL", "USDT", "USDC"}
    assert table["SOL"] == {"rate": 7500.0, "min": 0.05, "max": 133.0}


def test_presale_window_inclusive_and_phases():
    start = datetime(2025, 6, 25, tzinfo=timezone.utc)
    end = start + timedelta(days=10)
    window = PresaleWindow(start, end)

    assert window.is_active(start)
    assert window.is_active(end)
    assert not window.is_active(start - timedelta(milliseconds=1))
    assert window.phase(start - timedelta(days=1)) == "upcoming"
    assert window.phase(end + timedelta(seconds=1)) == "ended"

    status = window.status(start + timedelta(days=9))
    assert status["status"] == "active"
    assert status["timeLeft"] == 86_400_000
    assert window.status(end + timedelta(days=1))["timeLeft"] == 0


def test_presale_window_requires_start_before_end():
    with pytest.raises(MalformedConfigError):
        PresaleWindow.from_millis(1756166400000, 1750819200000)


def test_now_ms_is_wall_clock_milliseconds():
    before = int(time.time() * 1000)
    value = now_ms()
    after = int(time.time() * 1000)

    assert isinstance(value, int)
    assert before <= value <= after
