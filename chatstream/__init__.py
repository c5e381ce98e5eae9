"""
Client for the asynchronous chat job protocol of the stock AI chat.
"""

from .core.config import Settings, get_settings
from .services.chat_stream import ChatStream

__all__ = ["ChatStream", "Settings", "get_settings"]
