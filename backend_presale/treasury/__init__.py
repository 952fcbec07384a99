"""
Treasury package — custody of the CGT treasury key and reward disbursement.

TreasuryDisburser is the only component that holds key material or moves
treasury funds.
"""

from backend_presale.treasury.disburser import DisbursementResult, TreasuryDisburser

__all__ = ["DisbursementResult", "TreasuryDisburser"]
