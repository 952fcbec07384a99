"""
Treasury disburser: the only component that holds the treasury key and moves CGT.

Validation runs first and fails fast with a distinct error per check:
  1. recipient address well-formed      -> InvalidAddressError
  2. amount in [min, max] transfer      -> AmountOutOfBoundsError
  3. |now - request timestamp| <= 5 min -> ReplayExpiredError
  4. recipient in allow-list (if set)   -> RecipientNotAllowedError
  5. signed request not seen before     -> RequestReplayedError (direct transfers only)
Execution (never retried here): fresh on-chain mint decimals, recipient ATA
creation paid by the treasury when missing, transfer_checked from the treasury
ATA, sign, broadcast, confirm. Any failure after validation is reported as a
generic TransferExecutionError; the cause is logged for operators.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import TransferCheckedParams, get_associated_token_address, transfer_checked

from backend_presale.config.settings import (
    DEFAULT_CONFIRM_TIMEOUT_SEC,
    DEFAULT_MAX_TRANSFER,
    DEFAULT_MIN_TRANSFER,
    REPLAY_WINDOW_MS,
)
from backend_presale.core.addresses import parse_pubkey
from backend_presale.core.exceptions import (
    AmountOutOfBoundsError,
    PresaleError,
    RecipientNotAllowedError,
    ReplayExpiredError,
    RequestReplayedError,
    TransferExecutionError,
)
from backend_presale.ledger import ConfirmationOutcome, LedgerClient
from backend_presale.logging import get_logger
from backend_presale.presale.rates import now_ms, to_base_units
from backend_presale.presale.store import InMemoryTransferRequestLog, TransferRequestLog, create_request_log
from backend_presale.treasury.keys import load_keypair

logger = get_logger(__name__)

# Called with (signature, last_valid_block_height) after signing, before broadcast
BroadcastHook = Callable[[str, int], None]


class InflightState(str, enum.Enum):
    LANDED = "landed"
    DROPPED = "dropped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DisbursementResult:
    signature: str
    recipient: str
    amount: Decimal
    base_units: int
    decimals: int
    timestamp_ms: int


class TreasuryDisburser:
    """Signs and sends CGT transfers from the treasury. Key bytes never leave this object."""

    def __init__(
        self,
        keypair: Keypair,
        ledger: LedgerClient,
        cgt_mint: str,
        *,
        min_amount: Decimal = DEFAULT_MIN_TRANSFER,
        max_amount: Decimal = DEFAULT_MAX_TRANSFER,
        allowed_recipients: Iterable[str] = (),
        replay_window_ms: int = REPLAY_WINDOW_MS,
        confirm_timeout_sec: float = DEFAULT_CONFIRM_TIMEOUT_SEC,
        request_log: TransferRequestLog | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._keypair = keypair
        self._ledger = ledger
        self._mint = parse_pubkey(cgt_mint, field="CGT mint")
        self._min_amount = min_amount
        self._max_amount = max_amount
        self._allowed = frozenset(a.strip() for a in allowed_recipients if a.strip())
        self._replay_window_ms = replay_window_ms
        self._confirm_timeout_sec = confirm_timeout_sec
        self._request_log = request_log if request_log is not None else InMemoryTransferRequestLog()
        self._clock_ms = clock_ms

    @classmethod
    def from_settings(cls, settings: Any, ledger: LedgerClient) -> "TreasuryDisburser":
        return cls(
            load_keypair(settings.treasury_private_key),
            ledger,
            settings.cgt_mint,
            min_amount=settings.min_transfer_amount,
            max_amount=settings.max_transfer_amount,
            allowed_recipients=settings.allowed_recipients,
            replay_window_ms=settings.replay_window_ms,
            confirm_timeout_sec=settings.confirm_timeout_sec,
            request_log=create_request_log(settings.verification_db_url),
        )

    def __repr__(self) -> str:
        return f"TreasuryDisburser(treasury={self.treasury_address})"

    @property
    def treasury_address(self) -> str:
        return str(self._keypair.pubkey())

    @property
    def mint(self) -> Pubkey:
        return self._mint

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, recipient: str, reward_amount: Decimal, request_timestamp_ms: int) -> Pubkey:
        recipient_key = parse_pubkey(recipient, field="recipient")
        if not (self._min_amount <= reward_amount <= self._max_amount):
            raise AmountOutOfBoundsError()
        if abs(self._clock_ms() - int(request_timestamp_ms)) > self._replay_window_ms:
            raise ReplayExpiredError()
        if self._allowed and str(recipient_key) not in self._allowed:
            raise RecipientNotAllowedError()
        return recipient_key

    def _claim_request(self, request_key: str, request_timestamp_ms: int) -> None:
        # Kept until the timestamp leaves the freshness window; after that validate() refuses it
        expires_at_ms = int(request_timestamp_ms) + self._replay_window_ms
        if not self._request_log.claim(request_key, expires_at_ms, self._clock_ms()):
            raise RequestReplayedError()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def disburse(
        self,
        recipient: str,
        reward_amount: Decimal,
        request_timestamp_ms: int,
        *,
        on_broadcast: BroadcastHook | None = None,
        request_key: str | None = None,
    ) -> DisbursementResult:
        """
        Validate, then sign, send and confirm one CGT transfer. request_key identifies
        a signed direct-transfer request; each key is accepted once while its
        timestamp is fresh.
        """
        logger.info("treasury_transfer_attempt", recipient=recipient, amount=str(reward_amount))
        try:
            recipient_key = self.validate(recipient, reward_amount, request_timestamp_ms)
            if request_key is not None:
                self._claim_request(request_key, request_timestamp_ms)
        except PresaleError as e:
            logger.warning(
                "treasury_transfer_rejected",
                recipient=recipient,
                amount=str(reward_amount),
                reason=e.code,
            )
            raise

        try:
            result = self._execute(recipient_key, reward_amount, on_broadcast)
        except Exception as e:
            logger.exception(
                "treasury_transfer_failed",
                recipient=recipient,
                amount=str(reward_amount),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransferExecutionError() from e

        logger.info(
            "treasury_transfer_confirmed",
            recipient=result.recipient,
            amount=str(result.amount),
            base_units=result.base_units,
            decimals=result.decimals,
            signature=result.signature,
        )
        return result

    def _execute(
        self,
        recipient: Pubkey,
        reward_amount: Decimal,
        on_broadcast: BroadcastHook | None,
    ) -> DisbursementResult:
        treasury = self._keypair.pubkey()
        decimals = self._ledger.get_mint_decimals(self._mint)
        base_units = to_base_units(reward_amount, decimals)
        if base_units <= 0:
            raise ValueError(f"amount {reward_amount} truncates to zero base units")

        instructions = self._transfer_instructions(treasury, recipient, base_units, decimals)
        blockhash = self._ledger.get_latest_blockhash()
        message = Message.new_with_blockhash(instructions, treasury, blockhash.blockhash)
        tx = Transaction([self._keypair], message, blockhash.blockhash)
        signature = str(tx.signatures[0])

        if on_broadcast is not None:
            on_broadcast(signature, blockhash.last_valid_block_height)
        self._ledger.send_raw_transaction(bytes(tx))
        logger.info(
            "treasury_transfer_sent",
            recipient=str(recipient),
            amount=str(reward_amount),
            base_units=base_units,
            signature=signature,
        )

        outcome = self._ledger.confirm_signature(signature, self._confirm_timeout_sec)
        if outcome is not ConfirmationOutcome.CONFIRMED:
            raise RuntimeError(f"transfer {signature} not confirmed: {outcome.value}")
        return DisbursementResult(
            signature=signature,
            recipient=str(recipient),
            amount=reward_amount,
            base_units=base_units,
            decimals=decimals,
            timestamp_ms=self._clock_ms(),
        )

    def _transfer_instructions(
        self,
        treasury: Pubkey,
        recipient: Pubkey,
        base_units: int,
        decimals: int,
    ) -> list[Instruction]:
        source = get_associated_token_address(treasury, self._mint)
        dest = self._ledger.get_or_create_associated_account(recipient, self._mint, payer=treasury)
        instructions: list[Instruction] = []
        if dest.create_instruction is not None:
            logger.info("treasury_recipient_account_missing", recipient=str(recipient), account=str(dest.address))
            instructions.append(dest.create_instruction)
        instructions.append(
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source,
                    mint=self._mint,
                    dest=dest.address,
                    owner=treasury,
                    amount=base_units,
                    decimals=decimals,
                )
            )
        )
        return instructions

    def resolve_inflight(self, signature: str, last_valid_block_height: int) -> InflightState:
        """
        Decide the fate of a transfer that was broadcast but never seen confirmed.
        DROPPED means it can no longer land (failed, or its blockhash expired), so
        sending a new transfer cannot double-pay.
        """
        height = self._ledger.get_block_height()
        outcome = self._ledger.get_signature_outcome(signature)
        if outcome is ConfirmationOutcome.CONFIRMED:
            state = InflightState.LANDED
        elif outcome is ConfirmationOutcome.FAILED or height > last_valid_block_height:
            state = InflightState.DROPPED
        else:
            state = InflightState.UNKNOWN
        logger.info(
            "treasury_inflight_resolved",
            signature=signature,
            state=state.value,
            block_height=height,
            last_valid_block_height=last_valid_block_height,
        )
        return state
