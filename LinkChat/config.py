"""
Configuration module for LinkChat application.
Stores all application settings and sensitive information.
"""

import os
from typing import Dict, Any


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration class."""

    # JWT Configuration
    JWT_SECRET = os.environ.get("JWT_SECRET", "default-secret-key-change-in-production")
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
    JWT_EXPIRE_MINUTES = 30

    # Server Configuration
    DEFAULT_HOST = os.environ.get("LINKCHAT_HOST", "localhost")
    DEFAULT_SERVER_PORT = int(os.environ.get("LINKCHAT_PORT", "8765"))
    DEFAULT_API_PORT = int(os.environ.get("LINKCHAT_API_PORT", "8766"))

    # SQLite database (users, chats, message history)
    SQLITE_DB_FILE = os.environ.get("LINKCHAT_DB", "linkchat.db")

    # Realtime behaviour
    CALL_RING_TIMEOUT_SECONDS = float(os.environ.get("CALL_RING_TIMEOUT_SECONDS", "30"))
    AUTH_TIMEOUT_SECONDS = float(os.environ.get("AUTH_TIMEOUT_SECONDS", "30"))
    CLOSE_SUPERSEDED_CONNECTIONS = _env_bool("CLOSE_SUPERSEDED_CONNECTIONS", False)
    # delta | full | both
    PRESENCE_BROADCAST = os.environ.get("PRESENCE_BROADCAST", "both").lower()

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Get all configuration values as a dictionary."""
        return {
            "JWT_SECRET": cls.JWT_SECRET,
            "JWT_ALGORITHM": cls.JWT_ALGORITHM,
            "JWT_EXPIRE_MINUTES": cls.JWT_EXPIRE_MINUTES,
            "DEFAULT_HOST": cls.DEFAULT_HOST,
            "DEFAULT_SERVER_PORT": cls.DEFAULT_SERVER_PORT,
            "DEFAULT_API_PORT": cls.DEFAULT_API_PORT,
            "SQLITE_DB_FILE": cls.SQLITE_DB_FILE,
            "CALL_RING_TIMEOUT_SECONDS": cls.CALL_RING_TIMEOUT_SECONDS,
            "AUTH_TIMEOUT_SECONDS": cls.AUTH_TIMEOUT_SECONDS,
            "CLOSE_SUPERSEDED_CONNECTIONS": cls.CLOSE_SUPERSEDED_CONNECTIONS,
            "PRESENCE_BROADCAST": cls.PRESENCE_BROADCAST,
        }


# Create config instance
config = Config()
