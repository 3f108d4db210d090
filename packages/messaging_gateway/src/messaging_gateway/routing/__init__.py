"""
Messaging Routing

Tenant resolution, message classification and conversation routing.
"""

from messaging_gateway.routing.classifier import (
    ClassificationContext,
    ClassificationResult,
    KeywordClassifier,
    LLMClassifier,
    MessageClassifier,
)
from messaging_gateway.routing.conversation import (
    Actor,
    ConversationRouter,
    InvalidTransitionError,
)
from messaging_gateway.routing.tenant_resolver import TenantResolver

__all__ = [
    "TenantResolver",
    "MessageClassifier",
    "KeywordClassifier",
    "LLMClassifier",
    "ClassificationContext",
    "ClassificationResult",
    "ConversationRouter",
    "InvalidTransitionError",
    "Actor",
]
