"""
API server package — FastAPI app exposing payment creation, verification,
treasury transfers, balances, rates and presale status.
"""
