"""Solana address parsing shared by the request layer, builder and disburser."""

from __future__ import annotations

from solders.pubkey import Pubkey

from backend_presale.core.exceptions import InvalidAddressError


def parse_pubkey(address: str, *, field: str = "wallet") -> Pubkey:
    """Parse a base58 address into a Pubkey, raising InvalidAddressError."""
    address = (address or "").strip()
    if not address:
        raise InvalidAddressError(f"{field} must be non-empty")
    try:
        return Pubkey.from_string(address)
    except Exception as e:
        raise InvalidAddressError(f"Invalid {field} address") from e


def is_valid_address(address: str) -> bool:
    try:
        parse_pubkey(address)
    except InvalidAddressError:
        return False
    return True
