"""
Unsigned payment transaction builder.

Produces a transaction the buyer's wallet signs client-side: a SystemProgram
transfer for SOL, or an SPL transfer_checked for stablecoins (prefixed with an
associated-token-account creation funded by the buyer when the receiver has no
account yet). The server never signs these; it cannot move the buyer's funds.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import TransferCheckedParams, get_associated_token_address, transfer_checked

from backend_presale.core.addresses import parse_pubkey
from backend_presale.core.exceptions import InvalidAmountError, PresaleInactiveError
from backend_presale.ledger import LedgerClient
from backend_presale.logging import get_logger
from backend_presale.presale.rates import (
    AssetSpec,
    ExchangeRateTable,
    PresaleWindow,
    parse_amount,
    utc_now,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class UnsignedPaymentTransaction:
    serialized: bytes
    expected_reward: Decimal
    asset: AssetSpec
    amount: Decimal
    base_units: int
    last_valid_block_height: int

    def to_base64(self) -> str:
        return base64.b64encode(self.serialized).decode("ascii")


class TransactionBuilder:
    """Builds buyer-signed payment transactions to the presale receiver wallet."""

    def __init__(
        self,
        ledger: LedgerClient,
        rates: ExchangeRateTable,
        window: PresaleWindow,
        payment_receiver: str,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._rates = rates
        self._window = window
        self._receiver = parse_pubkey(payment_receiver, field="payment receiver")
        self._clock = clock

    def build(self, payer_address: str, asset_symbol: str, amount: Any) -> UnsignedPaymentTransaction:
        """
        Validate and build. Raises PresaleInactiveError, InvalidAssetError,
        InvalidAmountError, InvalidAddressError, LedgerUnavailableError.
        """
        if not self._window.is_active(self._clock()):
            raise PresaleInactiveError()
        spec = self._rates.asset(asset_symbol)
        human_amount = parse_amount(amount)
        self._rates.check_amount(spec.symbol, human_amount)
        payer = parse_pubkey(payer_address)

        base_units = spec.to_base_units(human_amount)
        if base_units <= 0:
            raise InvalidAmountError(f"{spec.symbol} amount is below the smallest unit")

        if spec.is_native:
            instructions = self._native_instructions(payer, base_units)
        else:
            instructions = self._token_instructions(payer, spec, base_units)

        blockhash = self._ledger.get_latest_blockhash()
        message = Message.new_with_blockhash(instructions, payer, blockhash.blockhash)
        tx = Transaction.new_unsigned(message)
        expected_reward = self._rates.reward_for(spec.symbol, human_amount)

        logger.info(
            "payment_tx_built",
            payer=str(payer),
            asset=spec.symbol,
            amount=str(human_amount),
            base_units=base_units,
            instruction_count=len(instructions),
            expected_reward=str(expected_reward),
        )
        return UnsignedPaymentTransaction(
            serialized=bytes(tx),
            expected_reward=expected_reward,
            asset=spec,
            amount=human_amount,
            base_units=base_units,
            last_valid_block_height=blockhash.last_valid_block_height,
        )

    def _native_instructions(self, payer: Pubkey, lamports: int) -> list[Instruction]:
        return [transfer(TransferParams(from_pubkey=payer, to_pubkey=self._receiver, lamports=lamports))]

    def _token_instructions(self, payer: Pubkey, spec: AssetSpec, base_units: int) -> list[Instruction]:
        mint = Pubkey.from_string(spec.mint)
        source = get_associated_token_address(payer, mint)
        dest = self._ledger.get_or_create_associated_account(self._receiver, mint, payer=payer)
        instructions: list[Instruction] = []
        if dest.create_instruction is not None:
            instructions.append(dest.create_instruction)
        instructions.append(
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source,
                    mint=mint,
                    dest=dest.address,
                    owner=payer,
                    amount=base_units,
                    decimals=spec.decimals,
                )
            )
        )
        return instructions
