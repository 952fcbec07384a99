"""
Presale package — exchange rates, payment transaction building and payment verification.

Modules: rates (ExchangeRateTable, PresaleWindow), payments (TransactionBuilder),
store (VerificationStore, TransferRequestLog), verifier (PaymentVerifier).
"""
