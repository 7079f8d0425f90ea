"""
Logging helpers for the duochat client.

Centralising log configuration keeps the rest of the modules focused on their
domain logic and lets the status API (uvicorn) share the same handlers.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# aiortc/aioice log every STUN transaction at INFO.
NOISY_LOGGERS = ("aioice", "aiortc", "engineio.client", "socketio.client")


def resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level '{level}'")
    return value


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    numeric_level = resolve_level(level)
    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=numeric_level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
