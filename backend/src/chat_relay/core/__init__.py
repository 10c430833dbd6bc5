"""Core utilities for Chat Relay"""

from chat_relay.core.config import get_settings, settings
from chat_relay.core.logging import configure_logging, get_logger

__all__ = ["settings", "get_settings", "configure_logging", "get_logger"]
