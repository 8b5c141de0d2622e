"""
HTTP and WebSocket control surface.
"""

from __future__ import annotations

from .server import EventStreamManager, create_app

__all__ = ["create_app", "EventStreamManager"]
