"""
Treasury key decoding.

CGT_TREASURY_PRIVATE_KEY is accepted as a base58 string (Phantom/solana-keygen
export) or as a JSON array of 64 bytes (id.json). Errors never echo key bytes.
"""

from __future__ import annotations

import json

import base58
from solders.keypair import Keypair

from backend_presale.core.exceptions import MalformedConfigError

KEYPAIR_LEN = 64


def load_keypair(private_key: str) -> Keypair:
    """Decode the treasury secret into a Keypair. Raises MalformedConfigError."""
    raw = (private_key or "").strip()
    if not raw:
        raise MalformedConfigError("Treasury private key is empty")
    if raw.startswith("["):
        try:
            arr = json.loads(raw)
            secret = bytes(arr)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise MalformedConfigError("Invalid treasury private key format") from e
    else:
        try:
            secret = base58.b58decode(raw)
        except ValueError as e:
            raise MalformedConfigError("Invalid treasury private key format") from e
    if len(secret) != KEYPAIR_LEN:
        raise MalformedConfigError(
            f"Treasury private key must decode to {KEYPAIR_LEN} bytes, got {len(secret)}"
        )
    try:
        return Keypair.from_bytes(secret)
    except Exception as e:
        raise MalformedConfigError("Treasury private key is not a valid ed25519 keypair") from e

