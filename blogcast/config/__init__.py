"""
Configuration for the gateway: settings and structured logging.
"""

from blogcast.config.settings import Settings, get_settings, settings
from blogcast.config.logging import get_logger, setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "get_logger",
    "setup_logging",
]
