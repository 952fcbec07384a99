"""
Core utilities — shared exceptions and cross-cutting helpers.

Provides the error taxonomy used by the ledger, presale, treasury and API layers.
"""
