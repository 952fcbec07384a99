"""
Backend Presale — custodial backend for the CGT token presale.

Builds unsigned payment transactions for buyers, verifies confirmed payments
on Solana, and disburses CGT from the treasury. Modular architecture with
clear separation between ledger access, presale rules, treasury custody and
the API server.
"""

__version__ = "0.1.0"
