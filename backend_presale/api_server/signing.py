"""
HMAC request signing for the direct treasury transfer endpoint.

The caller sends X-Request-Signature = hex(HMAC-SHA256(secret,
"{recipientWallet}:{amount}:{timestamp}")). Amounts are rendered the way a JSON
number prints: 100.0 signs as "100", 1.5 as "1.5".
"""

from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal
from typing import Any

from backend_presale.core.exceptions import UnauthorizedRequestError

SIGNATURE_HEADER = "X-Request-Signature"


def amount_text(amount: Any) -> str:
    if isinstance(amount, float) and amount.is_integer():
        return str(int(amount))
    if isinstance(amount, Decimal):
        return format(amount.normalize(), "f")
    return str(amount).strip()


def signing_payload(recipient: str, amount: Any, timestamp: int) -> bytes:
    return f"{recipient}:{amount_text(amount)}:{int(timestamp)}".encode("utf-8")


def sign_request(secret: str, recipient: str, amount: Any, timestamp: int) -> str:
    return hmac.new(secret.encode("utf-8"), signing_payload(recipient, amount, timestamp), hashlib.sha256).hexdigest()


def verify_request_signature(
    secret: str,
    signature: str | None,
    recipient: str,
    amount: Any,
    timestamp: int,
) -> None:
    """Raise UnauthorizedRequestError unless signature matches. No secret configured → always refused."""
    if not secret:
        raise UnauthorizedRequestError("Direct transfers are disabled")
    if not signature:
        raise UnauthorizedRequestError("Missing request signature")
    expected = sign_request(secret, recipient, amount, timestamp)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise UnauthorizedRequestError()
