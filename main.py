"""
Main entrypoint: validate configuration, then run the presale API server.

Configuration is checked before any listener is bound; a missing or malformed
treasury key, mint or receiver exits with status 1 and nothing is served.

Env: CGT_MINT_ADDRESS, CGT_TREASURY_PUBLIC_KEY, CGT_TREASURY_PRIVATE_KEY,
PAYMENT_RECEIVER_WALLET, SOLANA_RPC_ENDPOINTS, API_HOST, API_PORT, etc.

API only via uvicorn: uvicorn backend_presale.api_server.app:app --host 127.0.0.1 --port 3001
"""

import os
import sys

# Configure structured JSON logging before other imports that may log
from backend_presale.logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Load and validate settings, build the app, run uvicorn in the main thread."""
    from backend_presale.config import ServerConfigValidator, Settings
    from backend_presale.core.exceptions import ConfigError

    try:
        settings = Settings.from_env()
        ServerConfigValidator().validate(settings)
    except ConfigError as e:
        logger.error("main_config_error", code=e.code, message=e.message)
        sys.exit(1)

    from backend_presale.api_server.server import create_app
    import uvicorn

    app = create_app(settings)
    logger.info("main_server_starting", host=settings.api_host, port=settings.api_port)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
