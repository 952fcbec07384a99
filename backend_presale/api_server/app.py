"""
FastAPI/ASGI application entrypoint.

Validates configuration and builds the app from the environment at import time.
Run with: uvicorn backend_presale.api_server.app:app --host 127.0.0.1 --port 3001
"""

from backend_presale.api_server.server import create_app
from backend_presale.config import ServerConfigValidator, get_settings

settings = get_settings()
ServerConfigValidator().validate(settings)
app = create_app(settings)

__all__ = ["app"]
