"""
Messaging Stream Producer

Publishes messaging events to Redis Streams.
"""

import logging
from typing import Any
from uuid import UUID

import redis

from messaging_gateway.contracts.envelope import MessagingEnvelope
from messaging_gateway.contracts.event_types import MessagingEventType
from messaging_gateway.streams.groups import (
    AGENT_REQUESTS_STREAM,
    CONVERSATION_STATE_STREAM,
    REALTIME_STREAM,
    widget_stream,
)

logger = logging.getLogger(__name__)


class MessagingStreamProducer:
    """
    Producer for publishing messaging events to Redis Streams.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.max_len = max_len

    def publish_realtime(
        self,
        user_id: UUID,
        event_type: MessagingEventType,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """
        Publish a message or delivery event for live inboxes.

        Returns:
            Stream message ID
        """
        envelope = MessagingEnvelope.create(
            event_type=event_type.value,
            user_id=user_id,
            payload=payload,
            correlation_id=correlation_id,
        )

        return self._publish(REALTIME_STREAM, envelope)

    def publish_agent_request(
        self,
        user_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """
        Publish an auto-reply / agent assignment request.

        Returns:
            Stream message ID
        """
        envelope = MessagingEnvelope.create(
            event_type=MessagingEventType.AGENT_REQUESTED.value,
            user_id=user_id,
            payload=payload,
            correlation_id=correlation_id,
        )

        return self._publish(AGENT_REQUESTS_STREAM, envelope)

    def publish_state_change(
        self,
        user_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """
        Publish a conversation state change.

        Returns:
            Stream message ID
        """
        envelope = MessagingEnvelope.create(
            event_type=MessagingEventType.CONVERSATION_STATE_CHANGED.value,
            user_id=user_id,
            payload=payload,
            correlation_id=correlation_id,
        )

        return self._publish(CONVERSATION_STATE_STREAM, envelope)

    def publish_widget_message(
        self,
        user_id: UUID,
        widget_id: str,
        payload: dict[str, Any],
    ) -> str:
        """
        Publish an outbound message to a chat widget's stream.

        Returns:
            Stream message ID
        """
        envelope = MessagingEnvelope.create(
            event_type=MessagingEventType.WIDGET_MESSAGE.value,
            user_id=user_id,
            payload=payload,
        )

        return self._publish(widget_stream(widget_id), envelope)

    def _publish(self, stream_name: str, envelope: MessagingEnvelope) -> str:
        """
        Publish an envelope to a stream.

        Returns:
            Stream message ID
        """
        data = envelope.to_stream_data()

        msg_id = self.redis.xadd(
            stream_name,
            data,
            maxlen=self.max_len,
            approximate=True,
        )

        logger.debug(
            f"Published to {stream_name}",
            extra={
                "stream": stream_name,
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
                "msg_id": msg_id,
            },
        )

        return msg_id
