"""
Pytest fixtures for presale tests. RPC is mocked per endpoint URL (see tests/fakes.py);
the verification store is in memory.
"""

from __future__ import annotations

from decimal import Decimal

import base58
import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from backend_presale.config.settings import AssetConfig, Settings
from backend_presale.ledger import LedgerClient
from backend_presale.presale.store import InMemoryVerificationStore

from tests.fakes import DAY_MS, RPC_A, RPC_B, USDC_MINT, USDT_MINT, make_ledger, make_rpc_client, now_ms


@pytest.fixture
def treasury_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def buyer() -> Keypair:
    return Keypair()


@pytest.fixture
def receiver() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def cgt_mint() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def assets() -> tuple[AssetConfig, ...]:
    return (
        AssetConfig("SOL", None, 9, Decimal("7500"), Decimal("0.05"), Decimal("133")),
        AssetConfig("USDT", USDT_MINT, 6, Decimal("50"), Decimal("1"), Decimal("20000")),
        AssetConfig("USDC", USDC_MINT, 6, Decimal("50"), Decimal("1"), Decimal("20000")),
    )


@pytest.fixture
def settings(treasury_keypair, receiver, cgt_mint, assets) -> Settings:
    """Valid settings with an active presale window around now."""
    return Settings(
        cgt_mint=cgt_mint,
        treasury_public_key=str(treasury_keypair.pubkey()),
        treasury_private_key=base58.b58encode(bytes(treasury_keypair)).decode("ascii"),
        payment_receiver=receiver,
        assets=assets,
        presale_start_ms=now_ms() - DAY_MS,
        presale_end_ms=now_ms() + DAY_MS,
        rpc_endpoints=(RPC_A, RPC_B),
        confirm_timeout_sec=2.0,
        confirm_poll_interval_sec=0.0,
        rpc_retry_attempts=2,
        rpc_retry_backoff_sec=0.0,
        transfer_api_secret="test-secret",
    )


@pytest.fixture
def rpc_client():
    """Mock client behind the primary endpoint."""
    return make_rpc_client()


@pytest.fixture
def ledger(rpc_client) -> LedgerClient:
    return make_ledger({RPC_A: rpc_client, RPC_B: make_rpc_client()})


@pytest.fixture
def store() -> InMemoryVerificationStore:
    return InMemoryVerificationStore()


@pytest.fixture
def client(settings, ledger, store):
    """FastAPI TestClient over the app with mocked ledger and in-memory store."""
    from fastapi.testclient import TestClient

    from backend_presale.api_server.server import create_app

    app = create_app(settings, ledger=ledger, store=store)
    with TestClient(app) as test_client:
        yield test_client
