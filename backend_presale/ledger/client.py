"""
Solana RPC access with endpoint failover.

- Endpoints are tried in priority order; each is probed with getLatestBlockhash and
  the first that answers becomes the active connection.
- A transport failure on the active connection marks that endpoint unhealthy and
  triggers a re-selection pass (RetryPolicy.attempts passes in total).
- JSON-RPC error replies (RPCException) come from a live node and are not failover
  triggers; they propagate to the caller unchanged.
- When every endpoint fails the operation raises LedgerUnavailableError.
Health is kept in memory only and re-evaluated lazily on failure.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Sequence, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.instructions import create_idempotent_associated_token_account, get_associated_token_address

from backend_presale.core.exceptions import LedgerUnavailableError
from backend_presale.ledger.effects import TransactionEffects
from backend_presale.ledger.retry import RetryPolicy
from backend_presale.logging import get_logger, mask_rpc_url

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT_SEC = 10.0
DEFAULT_POLL_INTERVAL_SEC = 1.0

# Transport-level failures: the endpoint itself is unreachable or misbehaving
ENDPOINT_ERRORS: tuple[type[BaseException], ...] = (
    SolanaRpcException,
    httpx.HTTPError,
    OSError,
    TimeoutError,
)


class ConfirmationOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class Endpoint:
    """One RPC URL. Lower priority value is tried first."""

    url: str
    priority: int
    healthy: bool = True
    last_error: str | None = None


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class AccountRef:
    """
    An associated token account. create_instruction is set only when the account
    does not exist yet; the caller decides who pays for and signs it.
    """

    address: Pubkey
    exists: bool
    create_instruction: Instruction | None = None


def _value(resp: Any) -> Any:
    """solana-py responses expose .value; older shapes wrap it in .result."""
    value = getattr(resp, "value", None)
    if value is None and hasattr(resp, "result"):
        value = getattr(resp.result, "value", None)
    return value


def _is_confirmed_status(confirmation_status: Any) -> bool:
    """Accepts TransactionConfirmationStatus enums or plain strings."""
    name = str(confirmation_status or "").lower().rsplit(".", 1)[-1]
    return name in ("confirmed", "finalized")


def _default_client_factory(url: str) -> Client:
    return Client(url, commitment=Confirmed, timeout=DEFAULT_REQUEST_TIMEOUT_SEC)


class LedgerClient:
    """
    Read/write access to Solana through a pool of candidate RPC endpoints.

    One instance is created at startup and shared by the transaction builder,
    payment verifier and treasury disburser. Thread-safe.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        retry: RetryPolicy | None = None,
        client_factory: Callable[[str], Any] | None = None,
        commitment: Commitment = Confirmed,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one RPC endpoint is required")
        self._endpoints = [Endpoint(url=url, priority=i) for i, url in enumerate(endpoints)]
        self._retry = retry or RetryPolicy()
        self._client_factory = client_factory or _default_client_factory
        self._commitment = commitment
        self._poll_interval_sec = poll_interval_sec
        self._sleep = sleep
        self._clock = clock
        self._clients: dict[str, Any] = {}
        self._active: Endpoint | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any) -> "LedgerClient":
        return cls(
            settings.rpc_endpoints,
            retry=RetryPolicy(
                attempts=settings.rpc_retry_attempts,
                backoff_sec=settings.rpc_retry_backoff_sec,
            ),
            poll_interval_sec=settings.confirm_poll_interval_sec,
        )

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    # -------------------------------------------------------------------------
    # Endpoint selection
    # -------------------------------------------------------------------------

    def _client_for(self, endpoint: Endpoint) -> Any:
        client = self._clients.get(endpoint.url)
        if client is None:
            client = self._client_factory(endpoint.url)
            self._clients[endpoint.url] = client
        return client

    def _probe(self, endpoint: Endpoint) -> bool:
        """Network round-trip; must be called without holding self._lock."""
        with self._lock:
            client = self._client_for(endpoint)
        try:
            if _value(client.get_latest_blockhash(commitment=self._commitment)) is None:
                raise RuntimeError("empty blockhash response")
        except Exception as e:
            with self._lock:
                endpoint.healthy = False
                endpoint.last_error = str(e)
            logger.warning("ledger_probe_failed", endpoint=mask_rpc_url(endpoint.url), error=str(e))
            return False
        with self._lock:
            endpoint.healthy = True
            endpoint.last_error = None
        return True

    def _select(self) -> tuple[Endpoint, Any]:
        with self._lock:
            if self._active is not None:
                return self._active, self._client_for(self._active)
            # Known-healthy endpoints first, then the rest; priority order within each
            candidates = sorted(self._endpoints, key=lambda e: (not e.healthy, e.priority))

        for endpoint in candidates:
            if not self._probe(endpoint):
                continue
            with self._lock:
                # Another thread may have published a connection while we probed
                if self._active is None:
                    self._active = endpoint
                    logger.info("ledger_endpoint_selected", endpoint=mask_rpc_url(endpoint.url))
                return self._active, self._client_for(self._active)
        logger.error("ledger_all_endpoints_down", endpoint_count=len(self._endpoints))
        raise LedgerUnavailableError()

    def _mark_failed(self, endpoint: Endpoint, error: BaseException) -> None:
        with self._lock:
            endpoint.healthy = False
            endpoint.last_error = str(error)
            if self._active is endpoint:
                self._active = None

    def get_healthy_connection(self) -> Any:
        """Return an RPC client for a live endpoint, or raise LedgerUnavailableError."""
        _, client = self._select()
        return client

    def _call(self, op: str, fn: Callable[[Any], T]) -> T:
        last_error: BaseException | None = None
        for attempt in range(self._retry.attempts):
            endpoint, client = self._select()
            try:
                return fn(client)
            except ENDPOINT_ERRORS as e:
                last_error = e
                self._mark_failed(endpoint, e)
                logger.warning(
                    "ledger_call_failed",
                    op=op,
                    endpoint=mask_rpc_url(endpoint.url),
                    attempt=attempt + 1,
                    error=str(e),
                )
                self._retry.pause(attempt)
        raise LedgerUnavailableError() from last_error

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_latest_blockhash(self) -> BlockhashInfo:
        def _fetch(client: Any) -> BlockhashInfo:
            value = _value(client.get_latest_blockhash(commitment=self._commitment))
            if value is None:
                raise SolanaRpcException("empty blockhash response")
            return BlockhashInfo(
                blockhash=value.blockhash,
                last_valid_block_height=int(value.last_valid_block_height),
            )

        return self._call("get_latest_blockhash", _fetch)

    def get_block_height(self) -> int:
        return int(
            self._call(
                "get_block_height",
                lambda client: _value(client.get_block_height(commitment=self._commitment)),
            )
        )

    def account_exists(self, address: Pubkey) -> bool:
        return self._call(
            "get_account_info",
            lambda client: _value(client.get_account_info(address, commitment=self._commitment))
            is not None,
        )

    def get_or_create_associated_account(
        self,
        owner: Pubkey,
        mint: Pubkey,
        payer: Pubkey | None = None,
    ) -> AccountRef:
        """
        Resolve owner's associated token account for mint. When it does not exist,
        return the create instruction funded by payer (default: owner). The
        instruction is the idempotent variant: it succeeds if another transaction
        created the account first.
        """
        ata = get_associated_token_address(owner, mint)
        if self.account_exists(ata):
            return AccountRef(address=ata, exists=True)
        ix = create_idempotent_associated_token_account(payer=payer or owner, owner=owner, mint=mint)
        return AccountRef(address=ata, exists=False, create_instruction=ix)

    def get_mint_decimals(self, mint: Pubkey) -> int:
        """Decimals as reported on-chain right now; never cached."""

        def _fetch(client: Any) -> int:
            value = _value(client.get_token_supply(mint, commitment=self._commitment))
            if value is None:
                raise ValueError(f"mint {mint} not found")
            return int(value.decimals)

        return self._call("get_token_supply", _fetch)

    def get_token_balance(self, owner: Pubkey, mint: Pubkey) -> Decimal:
        """Human-unit balance of owner's associated account; 0 when it does not exist."""
        ata = get_associated_token_address(owner, mint)
        if not self.account_exists(ata):
            return Decimal(0)
        value = self._call(
            "get_token_account_balance",
            lambda client: _value(client.get_token_account_balance(ata, commitment=self._commitment)),
        )
        if value is None:
            return Decimal(0)
        return Decimal(int(value.amount)).scaleb(-int(value.decimals))

    def get_transaction_effects(self, signature: str) -> TransactionEffects | None:
        """Balance effects of a landed transaction, or None if the node does not know it."""
        sig = Signature.from_string(signature)
        value = self._call(
            "get_transaction",
            lambda client: _value(
                client.get_transaction(
                    sig,
                    encoding="jsonParsed",
                    commitment=self._commitment,
                    max_supported_transaction_version=0,
                )
            ),
        )
        if value is None:
            return None
        return TransactionEffects.from_rpc(value)

    # -------------------------------------------------------------------------
    # Writes and confirmation
    # -------------------------------------------------------------------------

    def send_raw_transaction(self, tx_bytes: bytes) -> str:
        """
        Broadcast a fully signed transaction. Resending the same bytes through
        another endpoint is safe: the ledger deduplicates by signature.
        """
        opts = TxOpts(skip_preflight=False, preflight_commitment=self._commitment)
        result = self._call(
            "send_raw_transaction",
            lambda client: _value(client.send_raw_transaction(tx_bytes, opts=opts)),
        )
        if result is None:
            raise SolanaRpcException("send_raw_transaction returned no signature")
        return str(result)

    def get_signature_outcome(self, signature: str) -> ConfirmationOutcome | None:
        """Single status poll: CONFIRMED, FAILED, or None while not yet confirmed."""
        sig = Signature.from_string(signature)
        statuses = self._call(
            "get_signature_statuses",
            lambda client: _value(client.get_signature_statuses([sig], search_transaction_history=True)),
        )
        if not statuses or statuses[0] is None:
            return None
        status = statuses[0]
        if getattr(status, "err", None) is not None:
            return ConfirmationOutcome.FAILED
        if _is_confirmed_status(getattr(status, "confirmation_status", None)):
            return ConfirmationOutcome.CONFIRMED
        return None

    def confirm_signature(self, signature: str, timeout_sec: float) -> ConfirmationOutcome:
        """
        Poll until the signature is confirmed, fails, or timeout_sec elapses.
        Raises LedgerUnavailableError only if no endpoint answered during the whole window.
        """
        deadline = self._clock() + timeout_sec
        answered = False
        while True:
            try:
                outcome = self.get_signature_outcome(signature)
                answered = True
            except LedgerUnavailableError:
                outcome = None
                logger.warning("ledger_confirm_poll_unavailable", signature=signature)
            if outcome is not None:
                logger.info("ledger_signature_outcome", signature=signature, outcome=outcome.value)
                return outcome
            if self._clock() >= deadline:
                break
            self._sleep(self._poll_interval_sec)
        if not answered:
            raise LedgerUnavailableError()
        logger.warning("ledger_confirm_timeout", signature=signature, timeout_sec=timeout_sec)
        return ConfirmationOutcome.TIMED_OUT
