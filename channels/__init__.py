"""Channel adapters for the supported message providers."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    TokenBucketRateLimiter,
    ChannelMetrics,
)
from channels.chat_adapter import ChatAdapter
from channels.email_adapter import EmailAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError",
    "TokenBucketRateLimiter", "ChannelMetrics",
    "ChatAdapter", "EmailAdapter",
]
