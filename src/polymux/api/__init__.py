"""HTTP and WebSocket surface for Polymux"""

from .websocket_manager import ConnectionManager

__all__ = ["ConnectionManager"]
