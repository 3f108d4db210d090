"""
Messaging Event Types

Events published by the messaging gateway to Redis Streams.
"""

from enum import Enum


class MessagingEventType(str, Enum):
    """
    Event types for the messaging gateway.

    PUBLISHED by the gateway:
    - MESSAGE_RECEIVED: A customer message was stored (real-time UI)
    - MESSAGE_SENT: An outbound message was sent and stored (real-time UI)
    - DELIVERY_STATUS_UPDATED: Provider reported sent/delivered/read/failed
    - AGENT_REQUESTED: Auto-reply / agent assignment requested
    - CONVERSATION_STATE_CHANGED: Status, priority or category changed
    - WIDGET_MESSAGE: Outbound message for a chat widget session
    """

    MESSAGE_RECEIVED = "messaging_message_received"
    MESSAGE_SENT = "messaging_message_sent"
    DELIVERY_STATUS_UPDATED = "messaging_delivery_status_updated"
    AGENT_REQUESTED = "messaging_agent_requested"
    CONVERSATION_STATE_CHANGED = "messaging_conversation_state_changed"
    WIDGET_MESSAGE = "messaging_widget_message"

    def __str__(self) -> str:
        return self.value
