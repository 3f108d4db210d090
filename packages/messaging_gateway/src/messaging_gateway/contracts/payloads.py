"""
Messaging Payload Models

Pydantic models for the payloads carried in messaging stream events.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class MessageEventPayload(BaseModel):
    """
    Payload for MESSAGE_RECEIVED and MESSAGE_SENT events.

    Everything a live inbox needs to render the message without a query.
    """

    message_id: UUID = Field(..., description="Stored message ID")
    conversation_id: UUID = Field(..., description="Conversation ID")
    customer_id: UUID | None = Field(None, description="Customer ID")
    platform: str = Field(..., description="Channel the message travelled on")
    direction: str = Field(..., description="inbound or outbound")
    sender_type: str = Field(..., description="customer, agent, system or ai_agent")
    content: str = Field("", description="Text content")
    message_type: str = Field("text", description="Normalized message type")
    media_url: str | None = Field(None, description="Media URL")
    platform_message_id: str | None = Field(None, description="Provider message ID")
    created_at: datetime = Field(..., description="When the message was stored")


class AgentRequestPayload(BaseModel):
    """
    Payload for AGENT_REQUESTED events.

    Consumed by the auto-reply / agent assignment service.
    """

    platform: str = Field(..., description="Channel to reply on")
    conversation_id: UUID = Field(..., description="Conversation ID")
    customer_id: UUID | None = Field(None, description="Customer ID")
    content: str = Field("", description="Customer message text")
    sender_id: str = Field(..., description="External sender identity to reply to")
    sender_name: str | None = Field(None, description="Sender display name")
    classification: dict[str, Any] = Field(default_factory=dict, description="Classification result")
    context: dict[str, Any] = Field(default_factory=dict, description="Additional context")


class ConversationStatePayload(BaseModel):
    """Payload for CONVERSATION_STATE_CHANGED events."""

    conversation_id: UUID = Field(..., description="Conversation ID")
    status: str = Field(..., description="Current status")
    previous_status: str | None = Field(None, description="Status before the change")
    priority: str | None = Field(None, description="Current priority")
    category: str | None = Field(None, description="Current category")
    assigned_team: str | None = Field(None, description="Assigned team name")
    assigned_agent: str | None = Field(None, description="Assigned agent name")
    reason: str | None = Field(None, description="What caused the change")


class DeliveryStatusPayload(BaseModel):
    """Payload for DELIVERY_STATUS_UPDATED events."""

    platform_message_id: str = Field(..., description="Provider message ID")
    message_id: UUID | None = Field(None, description="Stored message ID")
    conversation_id: UUID | None = Field(None, description="Conversation ID")
    status: str = Field(..., description="sent, delivered, read or failed")
    timestamp: datetime = Field(..., description="Status timestamp")
    error_code: str | None = Field(None, description="Error code (if failed)")
    error_message: str | None = Field(None, description="Error message (if failed)")


class WidgetMessagePayload(BaseModel):
    """Payload for WIDGET_MESSAGE events, read by the chat widget backend."""

    widget_id: str = Field(..., description="Widget the visitor is chatting on")
    visitor_id: str = Field(..., description="Visitor identity")
    session_id: str | None = Field(None, description="Widget session")
    content: str = Field("", description="Message text")
    message_type: str = Field("text", description="Normalized message type")
    media_url: str | None = Field(None, description="Media URL")
    sender_type: str = Field("agent", description="Who authored the message")
