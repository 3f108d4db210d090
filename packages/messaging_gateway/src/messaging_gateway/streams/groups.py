"""
Redis Stream Configuration

Stream names, consumer groups, and setup utilities.
"""

import logging
from dataclasses import dataclass

import redis

logger = logging.getLogger(__name__)

# Stream names
REALTIME_STREAM = "msg:realtime"
AGENT_REQUESTS_STREAM = "msg:agent_requests"
CONVERSATION_STATE_STREAM = "msg:conversation_state"
WIDGET_STREAM_PREFIX = "msg:widget"

# Consumer groups
REALTIME_GROUP = "realtime-broadcaster"
AGENT_GROUP = "agent-assignment"
STATE_GROUP = "conversation-state"


def widget_stream(widget_id: str) -> str:
    """Outbound stream read by one chat widget."""
    return f"{WIDGET_STREAM_PREFIX}:{widget_id}:outbound"


@dataclass
class StreamConfig:
    """Configuration for a stream and its consumer group."""

    stream_name: str
    group_name: str
    max_len: int = 100000
    start_id: str = "0"  # "0" = all history, "$" = new only


# Default configurations
STREAM_CONFIGS = [
    StreamConfig(REALTIME_STREAM, REALTIME_GROUP, start_id="$"),
    StreamConfig(AGENT_REQUESTS_STREAM, AGENT_GROUP),
    StreamConfig(CONVERSATION_STATE_STREAM, STATE_GROUP),
]


def ensure_stream_group(
    client: redis.Redis,
    stream_name: str,
    group_name: str,
    start_id: str = "0",
) -> bool:
    """
    Ensure a consumer group exists for a stream.

    Creates the group if it doesn't exist. Safe to call multiple times.

    Returns:
        True if group was created, False if it already existed
    """
    try:
        client.xgroup_create(stream_name, group_name, id=start_id, mkstream=True)
        logger.info(f"Created consumer group '{group_name}' for stream '{stream_name}'")
        return True
    except redis.ResponseError as e:
        if "BUSYGROUP" in str(e):
            logger.debug(f"Consumer group '{group_name}' already exists for '{stream_name}'")
            return False
        raise


def ensure_messaging_streams(client: redis.Redis) -> None:
    """
    Ensure all messaging streams and consumer groups exist.

    Called on startup by the webhook service.
    """
    for config in STREAM_CONFIGS:
        ensure_stream_group(
            client,
            config.stream_name,
            config.group_name,
            config.start_id,
        )


def get_stream_info(client: redis.Redis, stream_name: str) -> dict:
    """Get information about a stream."""
    try:
        info = client.xinfo_stream(stream_name)
        return {
            "length": info.get("length", 0),
            "first_entry": info.get("first-entry"),
            "last_entry": info.get("last-entry"),
            "groups": client.xinfo_groups(stream_name),
        }
    except redis.ResponseError:
        return {"length": 0, "error": "Stream does not exist"}
