"""
Ledger package — Solana RPC access with endpoint failover.

LedgerClient is an explicit value held by the components that need it; there is
no module-level connection. RetryPolicy governs failover only.
"""

from backend_presale.ledger.client import (
    AccountRef,
    BlockhashInfo,
    ConfirmationOutcome,
    Endpoint,
    LedgerClient,
)
from backend_presale.ledger.effects import TransactionEffects
from backend_presale.ledger.retry import RetryPolicy

__all__ = [
    "AccountRef",
    "BlockhashInfo",
    "ConfirmationOutcome",
    "Endpoint",
    "LedgerClient",
    "RetryPolicy",
    "TransactionEffects",
]
