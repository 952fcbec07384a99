"""
Payment verification and reward crediting.

Per payment signature the record moves:

    unseen -> pending -> confirmed -> disbursed
                      -> rejected

- pending -> confirmed: the ledger reports the transaction landed without error
  and its balance effects match the claim (payer signed it; the receiver gained
  at least the claimed amount of the claimed asset).
- pending -> rejected: on-chain error, effects mismatch, or confirmation timeout.
- confirmed -> disbursed: only after TreasuryDisburser confirms the CGT transfer.
  A failed disbursement leaves the record confirmed; the next call retries the
  disbursement without re-verifying the payment.

All of this runs under a per-signature lock, and every status change is a
compare-and-set in the store, so concurrent calls for one signature cannot both
disburse. The reward is always recomputed from the claimed amount and the rate
table; a client-supplied reward is never used.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from solders.signature import Signature

from backend_presale.core.addresses import parse_pubkey
from backend_presale.core.exceptions import (
    ConfirmationTimeoutError,
    LedgerUnavailableError,
    TransferExecutionError,
    ValidationError,
)
from backend_presale.ledger import ConfirmationOutcome, LedgerClient, TransactionEffects
from backend_presale.logging import get_logger
from backend_presale.presale.rates import AssetSpec, ExchangeRateTable, now_ms, parse_amount
from backend_presale.presale.store import (
    KeyedLocks,
    VerificationRecord,
    VerificationStatus,
    VerificationStore,
)
from backend_presale.treasury.disburser import InflightState, TreasuryDisburser

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    signature: str
    status: VerificationStatus
    reward_amount: Decimal
    recipient: str
    disbursement_signature: str | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status is VerificationStatus.DISBURSED

    @classmethod
    def from_record(cls, record: VerificationRecord) -> "VerificationResult":
        return cls(
            signature=record.signature,
            status=record.status,
            reward_amount=record.reward_amount,
            recipient=record.payer,
            disbursement_signature=record.disbursement_signature,
            reason=record.reason,
        )


class PaymentVerifier:
    def __init__(
        self,
        ledger: LedgerClient,
        rates: ExchangeRateTable,
        store: VerificationStore,
        disburser: TreasuryDisburser,
        payment_receiver: str,
        *,
        confirm_timeout_sec: float = 30.0,
        locks: KeyedLocks | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._ledger = ledger
        self._rates = rates
        self._store = store
        self._disburser = disburser
        self._receiver = str(parse_pubkey(payment_receiver, field="payment receiver"))
        self._confirm_timeout_sec = confirm_timeout_sec
        self._locks = locks or KeyedLocks()
        self._clock_ms = clock_ms

    def verify(
        self,
        signature: str,
        claimed_payer: str,
        claimed_amount: Any,
        claimed_asset: str,
    ) -> VerificationResult:
        """
        Verify a buyer's payment and credit CGT exactly once.
        Raises ValidationError subclasses for bad input, LedgerUnavailableError
        when the ledger cannot be reached (record stays pending), and
        TransferExecutionError when the CGT transfer fails (record stays confirmed).
        """
        signature = _parse_signature(signature)
        spec = self._rates.asset(claimed_asset)
        amount = parse_amount(claimed_amount)
        self._rates.check_amount(spec.symbol, amount)
        payer = str(parse_pubkey(claimed_payer))
        reward = self._rates.reward_for(spec.symbol, amount)

        with self._locks.hold(signature):
            record = self._store.get(signature)
            if record is None:
                self._store.create(
                    VerificationRecord(
                        signature=signature,
                        payer=payer,
                        asset=spec.symbol,
                        amount=amount,
                        reward_amount=reward,
                    )
                )
                record = self._store.get(signature)
                logger.info("payment_verify_started", signature=signature, payer=payer, asset=spec.symbol, amount=str(amount))
            else:
                _check_same_claim(record, payer, spec.symbol, amount)

            if record.status is VerificationStatus.DISBURSED:
                logger.info(
                    "payment_verify_replayed",
                    signature=signature,
                    disbursement_signature=record.disbursement_signature,
                )
                return VerificationResult.from_record(record)
            if record.status is VerificationStatus.REJECTED:
                return VerificationResult.from_record(record)

            if record.status is VerificationStatus.PENDING:
                record = self._confirm_payment(record, spec)
                if record.status is VerificationStatus.REJECTED:
                    return VerificationResult.from_record(record)

            return VerificationResult.from_record(self._credit(record))

    # -------------------------------------------------------------------------
    # pending -> confirmed | rejected
    # -------------------------------------------------------------------------

    def _confirm_payment(self, record: VerificationRecord, spec: AssetSpec) -> VerificationRecord:
        outcome = self._ledger.confirm_signature(record.signature, self._confirm_timeout_sec)
        if outcome is ConfirmationOutcome.FAILED:
            return self._reject(record, "Transaction failed on-chain")
        if outcome is ConfirmationOutcome.TIMED_OUT:
            return self._reject(record, ConfirmationTimeoutError.default_message)

        effects = self._ledger.get_transaction_effects(record.signature)
        if effects is None:
            # Confirmed but not yet served by getTransaction; stay pending for a retry
            logger.warning("payment_effects_unavailable", signature=record.signature)
            raise LedgerUnavailableError("Payment confirmed but not yet indexed, retry shortly")
        mismatch = self._effects_mismatch(effects, record, spec)
        if mismatch:
            return self._reject(record, mismatch)

        updated = self._store.transition(
            record.signature, VerificationStatus.PENDING, VerificationStatus.CONFIRMED
        )
        if updated is None:
            return self._store.get(record.signature)
        logger.info(
            "payment_confirmed",
            signature=record.signature,
            payer=record.payer,
            asset=record.asset,
            amount=str(record.amount),
            reward_amount=str(record.reward_amount),
        )
        return updated

    def _effects_mismatch(
        self,
        effects: TransactionEffects,
        record: VerificationRecord,
        spec: AssetSpec,
    ) -> str | None:
        if effects.failed:
            return "Transaction failed on-chain"
        if record.payer not in effects.signers:
            return "Payment was not signed by the claimed wallet"
        expected = spec.to_base_units(record.amount)
        if spec.is_native:
            received = effects.lamports_received(self._receiver)
        else:
            received = effects.tokens_received(self._receiver, spec.mint)
        if received < expected:
            logger.warning(
                "payment_amount_mismatch",
                signature=record.signature,
                asset=spec.symbol,
                expected_base_units=expected,
                received_base_units=received,
            )
            return "Payment amount does not match the transaction"
        return None

    def _reject(self, record: VerificationRecord, reason: str) -> VerificationRecord:
        updated = self._store.transition(
            record.signature,
            VerificationStatus.PENDING,
            VerificationStatus.REJECTED,
            reason=reason,
        )
        logger.warning("payment_rejected", signature=record.signature, payer=record.payer, reason=reason)
        return updated or self._store.get(record.signature)

    # -------------------------------------------------------------------------
    # confirmed -> disbursed
    # -------------------------------------------------------------------------

    def _credit(self, record: VerificationRecord) -> VerificationRecord:
        signature = record.signature

        if record.inflight_signature:
            state = self._disburser.resolve_inflight(
                record.inflight_signature, record.inflight_valid_height or 0
            )
            if state is InflightState.LANDED:
                return self._mark_disbursed(record, record.inflight_signature)
            if state is InflightState.UNKNOWN:
                raise TransferExecutionError("Previous transfer still pending, retry shortly")
            record = self._store.transition(
                signature,
                VerificationStatus.CONFIRMED,
                VerificationStatus.CONFIRMED,
                inflight_signature=None,
                inflight_valid_height=None,
            ) or record

        def _record_inflight(tx_signature: str, last_valid_block_height: int) -> None:
            if self._store.transition(
                signature,
                VerificationStatus.CONFIRMED,
                VerificationStatus.CONFIRMED,
                inflight_signature=tx_signature,
                inflight_valid_height=last_valid_block_height,
            ) is None:
                raise RuntimeError(f"verification record {signature} is no longer confirmed")

        result = self._disburser.disburse(
            record.payer,
            record.reward_amount,
            self._clock_ms(),
            on_broadcast=_record_inflight,
        )
        return self._mark_disbursed(record, result.signature)

    def _mark_disbursed(self, record: VerificationRecord, disbursement_signature: str) -> VerificationRecord:
        updated = self._store.transition(
            record.signature,
            VerificationStatus.CONFIRMED,
            VerificationStatus.DISBURSED,
            disbursement_signature=disbursement_signature,
            inflight_signature=None,
            inflight_valid_height=None,
        )
        logger.info(
            "payment_disbursed",
            signature=record.signature,
            recipient=record.payer,
            reward_amount=str(record.reward_amount),
            disbursement_signature=disbursement_signature,
        )
        return updated or self._store.get(record.signature)


def _parse_signature(signature: str) -> str:
    signature = (signature or "").strip()
    if not signature:
        raise ValidationError("signature must be non-empty")
    try:
        return str(Signature.from_string(signature))
    except Exception as e:
        raise ValidationError("Invalid transaction signature") from e


def _check_same_claim(record: VerificationRecord, payer: str, asset: str, amount: Decimal) -> None:
    if record.payer != payer or record.asset != asset or record.amount != amount:
        logger.warning(
            "payment_claim_conflict",
            signature=record.signature,
            stored_payer=record.payer,
            claimed_payer=payer,
        )
        raise ValidationError("Signature already submitted with different payment details")
