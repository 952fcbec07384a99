"""
Balance effects of a landed transaction, normalized from getTransaction (jsonParsed).

The payment verifier compares these against the buyer's claim: who signed, how
many lamports each account gained, and how many token base units each
(owner, mint) pair gained.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TransactionEffects:
    """Net effects of one transaction. Deltas are post minus pre, in base units."""

    fee_payer: str | None
    signers: frozenset[str]
    failed: bool
    lamport_deltas: dict[str, int] = field(default_factory=dict)
    token_deltas: dict[tuple[str, str], int] = field(default_factory=dict)

    def lamports_received(self, address: str) -> int:
        return self.lamport_deltas.get(address, 0)

    def tokens_received(self, owner: str, mint: str) -> int:
        return self.token_deltas.get((owner, mint), 0)

    @classmethod
    def from_rpc(cls, value: Any) -> "TransactionEffects":
        """
        Build from GetTransactionResp.value (EncodedConfirmedTransactionWithStatusMeta).
        Accepts solders objects or objects exposing the same attribute names.
        """
        tx_with_meta = getattr(value, "transaction", None)
        if tx_with_meta is None:
            raise ValueError("transaction payload missing")
        meta = getattr(tx_with_meta, "meta", None)
        if meta is None:
            raise ValueError("transaction meta missing")
        ui_tx = getattr(tx_with_meta, "transaction", None)
        message = getattr(ui_tx, "message", None)
        account_keys = list(getattr(message, "account_keys", None) or [])

        keys: list[str] = []
        signers: set[str] = set()
        for acc in account_keys:
            pubkey = _key_str(acc)
            keys.append(pubkey)
            if getattr(acc, "signer", False):
                signers.add(pubkey)

        pre = list(getattr(meta, "pre_balances", None) or [])
        post = list(getattr(meta, "post_balances", None) or [])
        lamport_deltas: dict[str, int] = {}
        for idx, pubkey in enumerate(keys):
            if idx < len(pre) and idx < len(post):
                lamport_deltas[pubkey] = lamport_deltas.get(pubkey, 0) + int(post[idx]) - int(pre[idx])

        token_deltas: dict[tuple[str, str], int] = {}
        for balances, sign in (
            (getattr(meta, "pre_token_balances", None) or [], -1),
            (getattr(meta, "post_token_balances", None) or [], 1),
        ):
            for bal in balances:
                owner = getattr(bal, "owner", None)
                mint = getattr(bal, "mint", None)
                ui_amount = getattr(bal, "ui_token_amount", None)
                if owner is None or mint is None or ui_amount is None:
                    continue
                key = (str(owner), str(mint))
                token_deltas[key] = token_deltas.get(key, 0) + sign * int(getattr(ui_amount, "amount", 0))

        return cls(
            fee_payer=keys[0] if keys else None,
            signers=frozenset(signers),
            failed=getattr(meta, "err", None) is not None,
            lamport_deltas=lamport_deltas,
            token_deltas=token_deltas,
        )


def _key_str(acc: Any) -> str:
    """ParsedAccount (jsonParsed) exposes .pubkey; plain encodings give a Pubkey."""
    pubkey = getattr(acc, "pubkey", None)
    return str(pubkey if pubkey is not None else acc)
