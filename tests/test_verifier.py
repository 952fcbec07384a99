"""
PaymentVerifier: confirmation, claim matching, idempotent crediting and in-flight recovery.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from backend_presale.core.exceptions import (
    LedgerUnavailableError,
    TransferExecutionError,
    ValidationError,
)
from backend_presale.presale.rates import ExchangeRateTable
from backend_presale.presale.store import VerificationStatus
from backend_presale.presale.verifier import PaymentVerifier
from backend_presale.treasury import TreasuryDisburser

from tests.fakes import USDT_MINT, make_ledger, payment_effects, rpc_resp


def _signature(payer: Keypair) -> str:
    """A real, well-formed transaction signature by payer."""
    msg = Message.new_with_blockhash(
        [transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))],
        payer.pubkey(),
        Hash.new_unique(),
    )
    return str(Transaction([payer], msg, Hash.new_unique()).signatures[0])


@pytest.fixture
def disburser(settings, ledger) -> TreasuryDisburser:
    return TreasuryDisburser.from_settings(settings, ledger)


@pytest.fixture
def verifier(settings, ledger, store, disburser) -> PaymentVerifier:
    return PaymentVerifier(
        ledger,
        ExchangeRateTable.from_settings(settings),
        store,
        disburser,
        settings.payment_receiver,
        confirm_timeout_sec=2.0,
    )


@pytest.fixture
def paid_sol(rpc_client, buyer, receiver):
    """Ledger shows buyer paid 0.1 SOL to the receiver."""
    rpc_client.get_transaction.return_value = rpc_resp(
        payment_effects(str(buyer.pubkey()), receiver, lamports=100_000_000)
    )
    return _signature(buyer)


def test_end_to_end_sol_payment_credits_750_once(verifier, rpc_client, buyer, paid_sol, store):
    """0.1 SOL at 7500 → 750 CGT; the second verify returns 750 without a second broadcast."""
    first = verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    assert first.status is VerificationStatus.DISBURSED
    assert first.reward_amount == Decimal("750")
    assert first.recipient == str(buyer.pubkey())
    assert first.disbursement_signature
    assert rpc_client.send_raw_transaction.call_count == 1

    second = verifier.verify(paid_sol, str(buyer.pubkey()), "0.1", "sol")

    assert second.status is VerificationStatus.DISBURSED
    assert second.reward_amount == Decimal("750")
    assert second.disbursement_signature == first.disbursement_signature
    assert rpc_client.send_raw_transaction.call_count == 1
    record = store.get(paid_sol)
    assert record.inflight_signature is None


def test_concurrent_verify_disburses_once(verifier, rpc_client, buyer, paid_sol):
    results = []
    errors = []

    def run():
        try:
            results.append(verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL"))
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert {r.status for r in results} == {VerificationStatus.DISBURSED}
    assert rpc_client.send_raw_transaction.call_count == 1


def test_token_payment_checked_against_mint(verifier, rpc_client, buyer, receiver):
    rpc_client.get_transaction.return_value = rpc_resp(
        payment_effects(str(buyer.pubkey()), receiver, token_mint=USDT_MINT, token_units=20_000_000)
    )

    result = verifier.verify(_signature(buyer), str(buyer.pubkey()), 20, "USDT")

    assert result.status is VerificationStatus.DISBURSED
    assert result.reward_amount == Decimal("1000")


def test_underpaid_transaction_rejected(verifier, rpc_client, buyer, receiver):
    rpc_client.get_transaction.return_value = rpc_resp(
        payment_effects(str(buyer.pubkey()), receiver, lamports=50_000_000)
    )

    result = verifier.verify(_signature(buyer), str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.REJECTED
    assert "amount" in result.reason
    assert rpc_client.send_raw_transaction.call_count == 0


def test_claimed_payer_must_have_signed(verifier, rpc_client, buyer, receiver):
    rpc_client.get_transaction.return_value = rpc_resp(
        payment_effects(str(buyer.pubkey()), receiver, lamports=100_000_000, payer_signed=False)
    )

    result = verifier.verify(_signature(buyer), str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.REJECTED
    assert rpc_client.send_raw_transaction.call_count == 0


def test_failed_transaction_rejected(verifier, rpc_client, buyer, paid_sol):
    rpc_client.get_signature_statuses.return_value = rpc_resp(
        [SimpleNamespace(err={"InstructionError": [0, "Custom"]}, confirmation_status="confirmed")]
    )

    result = verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.REJECTED
    assert result.reason == "Transaction failed on-chain"


def test_confirmation_timeout_rejects_not_pending(verifier, rpc_client, buyer, paid_sol, store):
    rpc_client.get_signature_statuses.return_value = rpc_resp([None])

    result = verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.REJECTED
    assert store.get(paid_sol).status is VerificationStatus.REJECTED
    # Rejection is terminal: later confirmation does not revive it
    rpc_client.get_signature_statuses.return_value = rpc_resp([SimpleNamespace(err=None, confirmation_status="finalized")])
    assert verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL").status is VerificationStatus.REJECTED
    assert rpc_client.send_raw_transaction.call_count == 0


def test_ledger_unavailable_leaves_record_pending(settings, store, disburser, buyer, receiver):
    down = MagicMock()
    down.get_latest_blockhash.side_effect = ConnectionError("down")
    ledger = make_ledger({settings.rpc_endpoints[0]: down})
    verifier = PaymentVerifier(
        ledger, ExchangeRateTable.from_settings(settings), store, disburser, receiver, confirm_timeout_sec=2.0
    )
    sig = _signature(buyer)

    with pytest.raises(LedgerUnavailableError):
        verifier.verify(sig, str(buyer.pubkey()), 0.1, "SOL")
    assert store.get(sig).status is VerificationStatus.PENDING


def test_failed_disbursement_stays_confirmed_and_retries_without_reverify(
    verifier, rpc_client, buyer, paid_sol, store
):
    rpc_client.get_token_supply.side_effect = [ValueError("mint account missing"), rpc_resp(SimpleNamespace(decimals=9))]

    with pytest.raises(TransferExecutionError):
        verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")
    assert store.get(paid_sol).status is VerificationStatus.CONFIRMED
    assert rpc_client.send_raw_transaction.call_count == 0
    assert rpc_client.get_transaction.call_count == 1

    result = verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.DISBURSED
    assert rpc_client.get_transaction.call_count == 1
    assert rpc_client.send_raw_transaction.call_count == 1


def test_unconfirmed_broadcast_is_not_resent_while_still_valid(verifier, rpc_client, buyer, paid_sol, store):
    """Broadcast went out but confirmation timed out; a retry must not pay twice."""
    statuses = iter(
        [rpc_resp([SimpleNamespace(err=None, confirmation_status="confirmed")])]  # payment confirmation
    )
    rpc_client.get_signature_statuses.side_effect = lambda *a, **k: next(statuses, rpc_resp([None]))

    with pytest.raises(TransferExecutionError):
        verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")
    record = store.get(paid_sol)
    assert record.status is VerificationStatus.CONFIRMED
    assert record.inflight_signature is not None
    assert rpc_client.send_raw_transaction.call_count == 1

    # Blockhash still valid and status unknown: refuse to send again
    with pytest.raises(TransferExecutionError, match="still pending"):
        verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")
    assert rpc_client.send_raw_transaction.call_count == 1

    # The earlier transfer landed after all: mark disbursed with its signature
    rpc_client.get_signature_statuses.side_effect = None
    rpc_client.get_signature_statuses.return_value = rpc_resp([SimpleNamespace(err=None, confirmation_status="confirmed")])
    result = verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.DISBURSED
    assert result.disbursement_signature == record.inflight_signature
    assert rpc_client.send_raw_transaction.call_count == 1


def test_expired_broadcast_is_resent(verifier, rpc_client, buyer, paid_sol, store):
    statuses = iter([rpc_resp([SimpleNamespace(err=None, confirmation_status="confirmed")])])
    rpc_client.get_signature_statuses.side_effect = lambda *a, **k: next(statuses, rpc_resp([None]))
    with pytest.raises(TransferExecutionError):
        verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    # Block height passed the transfer's last valid height: it can never land
    rpc_client.get_block_height.return_value = rpc_resp(10_000)
    rpc_client.get_signature_statuses.side_effect = [
        rpc_resp([None]),
        rpc_resp([SimpleNamespace(err=None, confirmation_status="confirmed")]),
    ]
    result = verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    assert result.status is VerificationStatus.DISBURSED
    assert rpc_client.send_raw_transaction.call_count == 2


def test_conflicting_claim_for_same_signature_refused(verifier, buyer, paid_sol):
    verifier.verify(paid_sol, str(buyer.pubkey()), 0.1, "SOL")

    with pytest.raises(ValidationError, match="different payment details"):
        verifier.verify(paid_sol, str(buyer.pubkey()), 0.2, "SOL")
    with pytest.raises(ValidationError):
        verifier.verify(paid_sol, str(Pubkey.new_unique()), 0.1, "SOL")


@pytest.mark.parametrize("sig", ["", "not-a-signature", "1" * 10])
def test_malformed_signature(verifier, buyer, sig):
    with pytest.raises(ValidationError):
        verifier.verify(sig, str(buyer.pubkey()), 0.1, "SOL")
