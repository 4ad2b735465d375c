"""
Telegram-OpenCode Bridge

API clients, configuration and message formatting shared by the Telegram mirror.
"""

from .config import BotConfig, load_config
from .formatting import format_part
from .opencode_client import OpenCodeClient, OpenCodeClientV2, build_clients

__all__ = [
    "BotConfig",
    "load_config",
    "format_part",
    "OpenCodeClient",
    "OpenCodeClientV2",
    "build_clients",
]
