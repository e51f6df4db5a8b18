"""HTTP and WebSocket interface of the rmri engine."""

from .server import create_app

__all__ = ["create_app"]
