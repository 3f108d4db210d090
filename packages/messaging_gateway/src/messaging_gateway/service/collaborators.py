"""
Gateway Collaborators

Boundary services the gateway notifies after persisting a message: live
inbox broadcast, auto-reply / agent assignment, and conversation state
tracking. The stream implementations publish to Redis Streams through the
(blocking) producer in a worker thread.
"""

import asyncio
import logging
from typing import Any, Protocol
from uuid import UUID

from messaging_gateway.contracts.event_types import MessagingEventType
from messaging_gateway.contracts.payloads import AgentRequestPayload, ConversationStatePayload
from messaging_gateway.streams.producer import MessagingStreamProducer

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    async def broadcast(self, user_id: UUID, event_type: MessagingEventType, payload: dict[str, Any]) -> None: ...


class AutoReplyTrigger(Protocol):
    async def request_reply(self, user_id: UUID, request: AgentRequestPayload) -> None: ...


class ConversationStateTracker(Protocol):
    async def state_changed(self, user_id: UUID, state: ConversationStatePayload) -> None: ...


class StreamBroadcaster:
    """Publishes message and delivery events for live inboxes."""

    def __init__(self, producer: MessagingStreamProducer):
        self.producer = producer

    async def broadcast(self, user_id: UUID, event_type: MessagingEventType, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(self.producer.publish_realtime, user_id, event_type, payload)


class StreamAutoReplyTrigger:
    """Requests an automated reply or agent assignment for a conversation."""

    def __init__(self, producer: MessagingStreamProducer):
        self.producer = producer

    async def request_reply(self, user_id: UUID, request: AgentRequestPayload) -> None:
        await asyncio.to_thread(
            self.producer.publish_agent_request,
            user_id,
            request.model_dump(mode="json"),
            str(request.conversation_id),
        )


class StreamConversationStateTracker:
    """Publishes conversation status/priority/assignment changes."""

    def __init__(self, producer: MessagingStreamProducer):
        self.producer = producer

    async def state_changed(self, user_id: UUID, state: ConversationStatePayload) -> None:
        await asyncio.to_thread(
            self.producer.publish_state_change,
            user_id,
            state.model_dump(mode="json"),
            str(state.conversation_id),
        )
