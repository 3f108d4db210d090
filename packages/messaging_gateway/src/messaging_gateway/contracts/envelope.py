"""
Messaging Event Envelope

Standard wrapper for events published by the messaging gateway.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from messaging_gateway.providers.base import utcnow


@dataclass
class MessagingEnvelope:
    """
    Standard event envelope for messaging events.

    This envelope is used:
    - By the gateway to publish real-time, agent and state events
    - By the widget adapter to publish outbound chat messages
    - By consumers (UI broadcaster, AI agents) to read them back

    Attributes:
        event_id: Unique identifier for this event instance
        event_type: Type of event (MessagingEventType value)
        user_id: Owning tenant
        occurred_at: When the event occurred (naive UTC)
        version: Event contract version
        payload: Event-specific data
        correlation_id: Optional correlation ID for tracing
        metadata: Additional metadata (source, stream message id, ...)
    """

    event_id: UUID
    event_type: str
    user_id: UUID
    occurred_at: datetime
    payload: dict[str, Any]
    version: int = 1
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        user_id: UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "MessagingEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            event_type=event_type,
            user_id=user_id,
            occurred_at=utcnow(),
            payload=payload,
            correlation_id=correlation_id,
            metadata=metadata or {},
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "MessagingEnvelope":
        """Parse a Redis Stream message into an envelope."""
        metadata = json.loads(data.get("metadata") or "{}")
        metadata["stream_msg_id"] = msg_id

        return cls(
            event_id=UUID(data["event_id"]),
            event_type=data["event_type"],
            user_id=UUID(data["user_id"]),
            occurred_at=(
                datetime.fromisoformat(data["occurred_at"])
                if data.get("occurred_at")
                else utcnow()
            ),
            version=int(data.get("version", "1")),
            payload=json.loads(data.get("payload") or "{}"),
            correlation_id=data.get("correlation_id") or None,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "user_id": str(self.user_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": self.version,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "metadata": self.metadata,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "user_id": str(self.user_id),
            "occurred_at": self.occurred_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload, default=str),
            "correlation_id": self.correlation_id or "",
            "metadata": json.dumps(self.metadata, default=str),
        }
