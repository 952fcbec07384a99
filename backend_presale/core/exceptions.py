"""
Application-level exceptions.

Every domain error carries a stable error code and the HTTP status the API layer
maps it to. Validation errors carry a precise client-facing message; execution
errors carry a generic one and keep the cause for server-side logs only.
"""

from __future__ import annotations


class PresaleError(Exception):
    """Base class for all domain errors."""

    code = "presale_error"
    http_status = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message, "code": self.code}


# -----------------------------------------------------------------------------
# Client input (400-class)
# -----------------------------------------------------------------------------


class ValidationError(PresaleError):
    code = "validation_error"
    http_status = 400
    default_message = "Invalid request"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"
    default_message = "Invalid payment amount"


class InvalidAssetError(ValidationError):
    code = "invalid_asset"
    default_message = "Invalid token type"


class InvalidAddressError(ValidationError):
    code = "invalid_address"
    default_message = "Invalid wallet address"


class AmountOutOfBoundsError(ValidationError):
    code = "amount_out_of_bounds"
    default_message = "Invalid transfer amount"


class PresaleInactiveError(PresaleError):
    code = "presale_inactive"
    http_status = 400
    default_message = "Presale is not active"


class ReplayExpiredError(PresaleError):
    code = "request_expired"
    http_status = 400
    default_message = "Request expired"


class RequestReplayedError(PresaleError):
    """A signed direct-transfer request that was already accepted once."""

    code = "request_replayed"
    http_status = 409
    default_message = "Request already processed"


class RateLimitedError(PresaleError):
    code = "rate_limited"
    http_status = 429
    default_message = "Too many requests, please try again later"


class RecipientNotAllowedError(PresaleError):
    code = "recipient_not_allowed"
    http_status = 403
    default_message = "Recipient not authorized"


class PaymentRejectedError(PresaleError):
    """Payment transaction failed on-chain, never confirmed, or does not match the claim."""

    code = "payment_rejected"
    http_status = 400
    default_message = "Payment verification failed"


class UnauthorizedRequestError(PresaleError):
    code = "unauthorized"
    http_status = 403
    default_message = "Request signature invalid"


# -----------------------------------------------------------------------------
# Ledger / execution (5xx-class)
# -----------------------------------------------------------------------------


class LedgerUnavailableError(PresaleError):
    """Every configured RPC endpoint failed. Retryable; never a payment failure."""

    code = "ledger_unavailable"
    http_status = 503
    default_message = "Ledger unavailable, retry later"


class ConfirmationTimeoutError(PresaleError):
    """Transaction was not confirmed before the polling deadline."""

    code = "confirmation_timeout"
    http_status = 400
    default_message = "Transaction was not confirmed in time"


class TransferExecutionError(PresaleError):
    """Signing, broadcast or confirmation of a treasury transfer failed."""

    code = "transfer_failed"
    http_status = 500
    default_message = "Transfer execution failed"


# -----------------------------------------------------------------------------
# Startup configuration
# -----------------------------------------------------------------------------


class ConfigError(PresaleError):
    code = "config_error"
    default_message = "Invalid server configuration"


class MissingConfigError(ConfigError):
    code = "missing_config"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Missing required server configuration: {name}")


class MalformedConfigError(ConfigError):
    code = "malformed_config"
