"""
Configuration management for the Backend Presale server.

Loads settings from environment variables and an optional .env file, and
validates them once at startup before any listener is bound.
"""

from backend_presale.config.settings import Settings, get_settings  # noqa: F401
from backend_presale.config.validator import ServerConfigValidator  # noqa: F401

__all__ = ["ServerConfigValidator", "Settings", "get_settings"]
