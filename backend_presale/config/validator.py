"""
Startup configuration validation.

Runs once before the HTTP listener is bound. Serving traffic with a
misconfigured treasury is worse than not serving at all, so every problem is
raised as a ConfigError and main() exits non-zero.
"""

from __future__ import annotations

from limits import parse as parse_rate_limit

from backend_presale.config.settings import Settings
from backend_presale.core.addresses import is_valid_address
from backend_presale.core.exceptions import MalformedConfigError, MissingConfigError
from backend_presale.logging import get_logger
from backend_presale.presale.rates import ExchangeRateTable, PresaleWindow
from backend_presale.treasury.keys import load_keypair

logger = get_logger(__name__)

REQUIRED_FIELDS: tuple[tuple[str, str], ...] = (
    ("cgt_mint", "CGT_MINT_ADDRESS"),
    ("treasury_public_key", "CGT_TREASURY_PUBLIC_KEY"),
    ("treasury_private_key", "CGT_TREASURY_PRIVATE_KEY"),
    ("payment_receiver", "PAYMENT_RECEIVER_WALLET"),
)

ADDRESS_FIELDS: tuple[tuple[str, str], ...] = (
    ("cgt_mint", "CGT_MINT_ADDRESS"),
    ("treasury_public_key", "CGT_TREASURY_PUBLIC_KEY"),
    ("payment_receiver", "PAYMENT_RECEIVER_WALLET"),
)


class ServerConfigValidator:
    """validate(settings) returns None or raises MissingConfigError / MalformedConfigError."""

    def validate(self, settings: Settings) -> None:
        for attr, env_name in REQUIRED_FIELDS:
            if not getattr(settings, attr):
                raise MissingConfigError(env_name)

        for attr, env_name in ADDRESS_FIELDS:
            if not is_valid_address(getattr(settings, attr)):
                raise MalformedConfigError(f"{env_name} is not a valid Solana address")

        keypair = load_keypair(settings.treasury_private_key)
        if str(keypair.pubkey()) != settings.treasury_public_key:
            raise MalformedConfigError(
                "CGT_TREASURY_PRIVATE_KEY does not match CGT_TREASURY_PUBLIC_KEY"
            )

        if not 0 <= settings.cgt_decimals <= 18:
            raise MalformedConfigError("CGT_DECIMALS must be between 0 and 18")
        if not settings.rpc_endpoints:
            raise MissingConfigError("SOLANA_RPC_ENDPOINTS")
        for url in settings.rpc_endpoints:
            if not url.startswith(("http://", "https://")):
                raise MalformedConfigError("RPC endpoints must be http(s) URLs")
        for cfg in settings.assets:
            if cfg.mint is not None and not is_valid_address(cfg.mint):
                raise MalformedConfigError(f"{cfg.symbol} mint is not a valid Solana address")
        for address in settings.allowed_recipients:
            if not is_valid_address(address):
                raise MalformedConfigError("ALLOWED_RECIPIENTS contains an invalid address")
        if settings.min_transfer_amount <= 0 or settings.min_transfer_amount > settings.max_transfer_amount:
            raise MalformedConfigError("MIN_TRANSFER_AMOUNT must be > 0 and <= MAX_TRANSFER_AMOUNT")
        if settings.confirm_timeout_sec <= 0:
            raise MalformedConfigError("CONFIRM_TIMEOUT_SEC must be > 0")
        try:
            parse_rate_limit(settings.rate_limit)
        except ValueError as e:
            raise MalformedConfigError(f"RATE_LIMIT is not a valid limit: {settings.rate_limit!r}") from e

        # Rate and window invariants are enforced by their constructors
        ExchangeRateTable.from_settings(settings)
        PresaleWindow.from_millis(settings.presale_start_ms, settings.presale_end_ms)
        _check_rewards_within_transfer_bounds(settings)

        logger.info(
            "server_config_validated",
            treasury=settings.treasury_public_key,
            cgt_mint=settings.cgt_mint,
            payment_receiver=settings.payment_receiver,
            rpc_endpoint_count=len(settings.rpc_endpoints),
            allow_list_size=len(settings.allowed_recipients),
        )


def _check_rewards_within_transfer_bounds(settings: Settings) -> None:
    """Every accepted payment must earn a reward the treasury is allowed to send."""
    for cfg in settings.assets:
        largest = cfg.rate * cfg.max_units
        smallest = cfg.rate * cfg.min_units
        if largest > settings.max_transfer_amount:
            raise MalformedConfigError(
                f"MAX_{cfg.symbol} at rate {cfg.rate} earns {largest} CGT, "
                f"above MAX_TRANSFER_AMOUNT {settings.max_transfer_amount}"
            )
        if smallest < settings.min_transfer_amount:
            raise MalformedConfigError(
                f"MIN_{cfg.symbol} at rate {cfg.rate} earns {smallest} CGT, "
                f"below MIN_TRANSFER_AMOUNT {settings.min_transfer_amount}"
            )
