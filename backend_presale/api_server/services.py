"""
Long-lived components shared by every request.

Built once at startup from Settings and stored on app.state; handlers receive
them through the get_services dependency. Tests pass their own ledger/store.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from backend_presale.config.settings import Settings
from backend_presale.ledger import LedgerClient
from backend_presale.presale.payments import TransactionBuilder
from backend_presale.presale.rates import ExchangeRateTable, PresaleWindow
from backend_presale.presale.store import VerificationStore, create_store
from backend_presale.presale.verifier import PaymentVerifier
from backend_presale.treasury import TreasuryDisburser


@dataclass
class PresaleServices:
    settings: Settings
    ledger: LedgerClient
    rates: ExchangeRateTable
    window: PresaleWindow
    builder: TransactionBuilder
    store: VerificationStore
    disburser: TreasuryDisburser
    verifier: PaymentVerifier


def build_services(
    settings: Settings,
    *,
    ledger: LedgerClient | None = None,
    store: VerificationStore | None = None,
) -> PresaleServices:
    ledger = ledger or LedgerClient.from_settings(settings)
    store = store if store is not None else create_store(settings.verification_db_url)
    rates = ExchangeRateTable.from_settings(settings)
    window = PresaleWindow.from_millis(settings.presale_start_ms, settings.presale_end_ms)
    disburser = TreasuryDisburser.from_settings(settings, ledger)
    return PresaleServices(
        settings=settings,
        ledger=ledger,
        rates=rates,
        window=window,
        builder=TransactionBuilder(ledger, rates, window, settings.payment_receiver),
        store=store,
        disburser=disburser,
        verifier=PaymentVerifier(
            ledger,
            rates,
            store,
            disburser,
            settings.payment_receiver,
            confirm_timeout_sec=settings.confirm_timeout_sec,
        ),
    )


def get_services(request: Request) -> PresaleServices:
    """Dependency: the app-scoped services built at startup."""
    return request.app.state.services
