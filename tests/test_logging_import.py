"""
Test that backend_presale.logging imports without circular imports and redacts secrets.
"""

from __future__ import annotations


def test_logging_import():
    """Import get_logger and use the logger."""
    from backend_presale.logging import get_logger

    logger = get_logger("test")
    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "warning")
    assert hasattr(logger, "error")
    # Smoke test: call info (should not raise)
    logger.info("test_message", key="value")


def test_secret_fields_redacted():
    from backend_presale.logging.logger import _redact_secrets

    event = _redact_secrets(None, "info", {"event": "x", "private_key": "abc", "Secret": "s", "wallet": "w"})
    assert event["private_key"] == "***"
    assert event["Secret"] == "***"
    assert event["wallet"] == "w"


def test_mask_rpc_url():
    from backend_presale.logging import mask_rpc_url

    assert mask_rpc_url("https://rpc.test/?api-key=abc123") == "https://rpc.test/?api-key=***"
    assert mask_rpc_url("https://api.mainnet-beta.solana.com") == "https://api.mainnet-beta.solana.com"
