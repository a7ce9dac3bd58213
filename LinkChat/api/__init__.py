"""HTTP API served beside the realtime server."""

from .routes_api import create_app

__all__ = ['create_app']
