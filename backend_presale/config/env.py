"""
Environment variable loading for Backend Presale.

- Loads .env from the project root when available.
- SOLANA_RPC_ENDPOINTS: comma-separated RPC URLs in priority order; otherwise
  SOLANA_RPC_PRIMARY / SOLANA_RPC_URL followed by the public fallback endpoint.
"""

from __future__ import annotations

import os
from pathlib import Path

# Project root: config is backend_presale/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
FALLBACK_RPC_URL = "https://rpc.ankr.com/solana"


def load_presale_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides real env."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH, override=False)


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def env_list(name: str) -> list[str]:
    """Comma-separated env value as a list, blanks dropped."""
    raw = env_str(name)
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_rpc_endpoints() -> list[str]:
    """
    Resolve RPC endpoints in priority order.
    Order: SOLANA_RPC_ENDPOINTS > [SOLANA_RPC_PRIMARY or SOLANA_RPC_URL or mainnet, fallback].
    """
    explicit = env_list("SOLANA_RPC_ENDPOINTS")
    if explicit:
        urls = explicit
    else:
        primary = env_str("SOLANA_RPC_PRIMARY") or env_str("SOLANA_RPC_URL") or MAINNET_RPC_URL
        urls = [primary, FALLBACK_RPC_URL]
    seen: set[str] = set()
    out: list[str] = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            out.append(url)
    return out
