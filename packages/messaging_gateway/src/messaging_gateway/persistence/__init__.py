"""
Messaging Persistence

SQLAlchemy models and repository for the messaging tables.
These tables are OWNED by the messaging gateway.
"""

from messaging_gateway.persistence.models import (
    Agent,
    Category,
    Conversation,
    ConversationStatus,
    Customer,
    Integration,
    IntegrationStatus,
    LifecycleStage,
    Message,
    MessageDirection,
    MessageStatus,
    MessagingBase,
    Priority,
    RoutingRule,
    Team,
)
from messaging_gateway.persistence.repo import MessagingRepository

__all__ = [
    "MessagingBase",
    "Integration",
    "Customer",
    "Conversation",
    "Message",
    "RoutingRule",
    "Team",
    "Agent",
    "MessagingRepository",
    "IntegrationStatus",
    "LifecycleStage",
    "ConversationStatus",
    "Priority",
    "Category",
    "MessageDirection",
    "MessageStatus",
]
