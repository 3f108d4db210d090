"""
Messaging Contracts

Event types, payloads, and envelope definitions for messaging streams.
"""

from messaging_gateway.contracts.envelope import MessagingEnvelope
from messaging_gateway.contracts.event_types import MessagingEventType
from messaging_gateway.contracts.payloads import (
    AgentRequestPayload,
    ConversationStatePayload,
    DeliveryStatusPayload,
    MessageEventPayload,
    WidgetMessagePayload,
)

__all__ = [
    "MessagingEventType",
    "MessagingEnvelope",
    "MessageEventPayload",
    "AgentRequestPayload",
    "ConversationStatePayload",
    "DeliveryStatusPayload",
    "WidgetMessagePayload",
]
