"""
FastAPI server — presale payment and treasury API.

Routes:
  POST /api/payment/create   unsigned payment transaction for the buyer to sign
  POST /api/payment/verify   confirm a payment on-chain and credit CGT once
  POST /api/transfer-cgt     HMAC-signed direct treasury transfer
  GET  /api/balance/{wallet} CGT balance of a wallet
  GET  /api/rates            accepted assets with rate and bounds
  GET  /api/presale/status   upcoming / active / ended with time left
  GET  /api/health, /health  liveness

Handlers are sync and run in the threadpool; the solana-py client blocks only
its worker thread. Domain errors render as {success: false, error, code}.
Every /api route draws on one per-client slowapi budget (RATE_LIMIT).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Union

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from solders.pubkey import Pubkey

from backend_presale import __version__
from backend_presale.api_server.middleware import install_middleware
from backend_presale.api_server.services import PresaleServices, build_services, get_services
from backend_presale.api_server.signing import verify_request_signature
from backend_presale.config.settings import Settings
from backend_presale.core.addresses import parse_pubkey
from backend_presale.core.exceptions import (
    PaymentRejectedError,
    PresaleError,
    RateLimitedError,
    ValidationError,
)
from backend_presale.ledger import LedgerClient
from backend_presale.logging import get_logger
from backend_presale.presale.rates import parse_amount
from backend_presale.presale.store import VerificationStatus, VerificationStore

logger = get_logger(__name__)

AmountField = Union[int, float, str]


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class PaymentCreateRequest(BaseModel):
    """POST /api/payment/create body."""

    wallet: str = Field(..., min_length=1, max_length=64, description="Buyer wallet (base58)")
    amount: AmountField = Field(..., description="Payment amount in human units")
    tokenType: str = Field(..., min_length=1, max_length=16, description="SOL, USDT or USDC")


class PaymentCreateResponse(BaseModel):
    success: bool = True
    transaction: str = Field(..., description="Unsigned transaction, base64")
    expectedRewardAmount: float
    lastValidBlockHeight: int


class PaymentVerifyRequest(BaseModel):
    """POST /api/payment/verify body."""

    signature: str = Field(..., min_length=1, max_length=128, description="Payment transaction signature")
    wallet: str = Field(..., min_length=1, max_length=64)
    amount: AmountField
    tokenType: str = Field(..., min_length=1, max_length=16)


class PaymentVerifyResponse(BaseModel):
    success: bool
    signature: str
    rewardAmount: float
    recipient: str
    status: str
    disbursementSignature: str | None = None


class TransferRequest(BaseModel):
    """POST /api/transfer-cgt body; must carry a valid X-Request-Signature header."""

    recipientWallet: str = Field(..., min_length=1, max_length=64)
    amount: AmountField
    timestamp: int = Field(..., description="Request time, unix ms")


class TransferResponse(BaseModel):
    success: bool = True
    signature: str
    amount: float
    recipient: str
    timestamp: int


class BalanceResponse(BaseModel):
    success: bool = True
    wallet: str
    balance: float


# -----------------------------------------------------------------------------
# Lifespan
# -----------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: PresaleServices = app.state.services
    logger.info(
        "api_started",
        treasury=services.disburser.treasury_address,
        assets=services.rates.symbols(),
        presale=services.window.phase(),
        endpoint_count=len(services.ledger.endpoints),
    )
    yield
    logger.info("api_stopped")


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------


def create_app(
    settings: Settings,
    *,
    ledger: LedgerClient | None = None,
    store: VerificationStore | None = None,
) -> FastAPI:
    """Build the app with its services. Settings must already be validated."""
    app = FastAPI(
        title="Backend Presale API",
        description="CGT presale: payment transactions, verification and treasury disbursement.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = build_services(settings, ledger=ledger, store=store)
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    install_middleware(app)

    @app.exception_handler(PresaleError)
    def presale_error_handler(request: Request, exc: PresaleError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("api_request_failed", code=exc.code, error=exc.message, status=exc.http_status)
        else:
            logger.info("api_request_refused", code=exc.code, error=exc.message, status=exc.http_status)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RateLimitExceeded)
    def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        err = RateLimitedError()
        logger.warning("api_rate_limited", path=request.url.path, limit=str(exc.detail))
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    @app.exception_handler(RequestValidationError)
    def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        field = ".".join(str(p) for p in errors[0].get("loc", ())[1:]) if errors else ""
        err = ValidationError(f"Invalid or missing field: {field}" if field else None)
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    @app.exception_handler(Exception)
    def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("api_unhandled_error", error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "code": "internal_error"},
        )

    _register_routes(app, limiter, settings.rate_limit)
    return app


def _register_routes(app: FastAPI, limiter: Limiter, rate_limit: str) -> None:
    # One budget per client shared by every /api route
    api_limit = limiter.shared_limit(rate_limit, scope="api")

    @app.post("/api/payment/create", response_model=PaymentCreateResponse)
    @api_limit
    def create_payment(
        request: Request,
        body: PaymentCreateRequest,
        services: PresaleServices = Depends(get_services),
    ) -> PaymentCreateResponse:
        """Build an unsigned payment transaction; the buyer signs and broadcasts it."""
        logger.info("payment_create_called", wallet=body.wallet, asset=body.tokenType, amount=str(body.amount))
        unsigned = services.builder.build(body.wallet.strip(), body.tokenType, body.amount)
        return PaymentCreateResponse(
            transaction=unsigned.to_base64(),
            expectedRewardAmount=float(unsigned.expected_reward),
            lastValidBlockHeight=unsigned.last_valid_block_height,
        )

    @app.post("/api/payment/verify", response_model=PaymentVerifyResponse)
    @api_limit
    def verify_payment(
        request: Request,
        body: PaymentVerifyRequest,
        services: PresaleServices = Depends(get_services),
    ):
        """
        Verify the buyer's payment and send the CGT reward.
        Safe to call repeatedly: a disbursed signature returns its stored result.
        """
        result = services.verifier.verify(body.signature, body.wallet.strip(), body.amount, body.tokenType)
        if result.status is VerificationStatus.REJECTED:
            err = PaymentRejectedError(result.reason)
            return JSONResponse(
                status_code=err.http_status,
                content={**err.to_dict(), "status": result.status.value, "signature": result.signature},
            )
        return PaymentVerifyResponse(
            success=result.success,
            signature=result.signature,
            rewardAmount=float(result.reward_amount),
            recipient=result.recipient,
            status=result.status.value,
            disbursementSignature=result.disbursement_signature,
        )

    @app.post("/api/transfer-cgt", response_model=TransferResponse)
    @api_limit
    def transfer_cgt(
        request: Request,
        body: TransferRequest,
        x_request_signature: str | None = Header(None, alias="X-Request-Signature"),
        services: PresaleServices = Depends(get_services),
    ) -> TransferResponse:
        """Direct treasury transfer for operators; request must be HMAC-signed and fresh."""
        verify_request_signature(
            services.settings.transfer_api_secret,
            x_request_signature,
            body.recipientWallet,
            body.amount,
            body.timestamp,
        )
        amount = parse_amount(body.amount)
        result = services.disburser.disburse(
            body.recipientWallet.strip(),
            amount,
            body.timestamp,
            request_key=x_request_signature.strip().lower(),
        )
        return TransferResponse(
            signature=result.signature,
            amount=float(result.amount),
            recipient=result.recipient,
            timestamp=result.timestamp_ms,
        )

    @app.get("/api/balance/{wallet}", response_model=BalanceResponse)
    @api_limit
    def get_balance(
        request: Request,
        wallet: str,
        services: PresaleServices = Depends(get_services),
    ) -> BalanceResponse:
        """CGT balance of wallet in human units (0 when it has no token account)."""
        owner = parse_pubkey(wallet)
        balance = services.ledger.get_token_balance(owner, Pubkey.from_string(services.settings.cgt_mint))
        return BalanceResponse(wallet=str(owner), balance=float(balance))

    @app.get("/api/rates")
    @api_limit
    def get_rates(request: Request, services: PresaleServices = Depends(get_services)) -> dict[str, dict[str, float]]:
        return services.rates.as_public_table()

    @app.get("/api/presale/status")
    @api_limit
    def presale_status(request: Request, services: PresaleServices = Depends(get_services)) -> dict[str, Any]:
        return services.window.status()

    @app.get("/api/health")
    @api_limit
    def api_health(request: Request, services: PresaleServices = Depends(get_services)) -> dict[str, Any]:
        """Liveness plus the public treasury address and presale phase."""
        return {
            "status": "ok",
            "treasury": services.disburser.treasury_address,
            "presale": services.window.phase(),
            "version": __version__,
        }

    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness probe: API is up."""
        return {"status": "ok"}
