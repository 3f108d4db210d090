"""
Messaging Redis Streams

Producer and stream setup for messaging events.
"""

from messaging_gateway.streams.groups import (
    AGENT_REQUESTS_STREAM,
    CONVERSATION_STATE_STREAM,
    REALTIME_STREAM,
    StreamConfig,
    ensure_messaging_streams,
    get_stream_info,
    widget_stream,
)
from messaging_gateway.streams.producer import MessagingStreamProducer

__all__ = [
    "MessagingStreamProducer",
    "ensure_messaging_streams",
    "get_stream_info",
    "widget_stream",
    "StreamConfig",
    "REALTIME_STREAM",
    "AGENT_REQUESTS_STREAM",
    "CONVERSATION_STATE_STREAM",
]
