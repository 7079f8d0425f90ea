"""
Local status surface consumed by the UI.
"""

from __future__ import annotations

from .server import EventHub, create_app

__all__ = ["EventHub", "create_app"]
