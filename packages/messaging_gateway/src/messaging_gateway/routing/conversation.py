"""
Conversation State Management

State machine over conversation status, and the router that applies
classifications, tenant routing rules and escalations to a conversation.

    open      -> pending, closed, escalated
    pending   -> open, closed
    escalated -> open, closed        (agents only)
    closed    -> (terminal; the next message opens a new conversation)
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from messaging_gateway.persistence.models import (
    Conversation,
    ConversationStatus,
    Message,
    Priority,
    RoutingRule,
)
from messaging_gateway.persistence.repo import MessagingRepository
from messaging_gateway.providers.base import utcnow
from messaging_gateway.routing.classifier import ClassificationResult

logger = logging.getLogger(__name__)

ESCALATED_TAG = "escalated"


class Actor(str, Enum):
    """Who is asking for a status change."""

    CUSTOMER = "customer"
    SYSTEM = "system"
    AGENT = "agent"


ALLOWED_TRANSITIONS: dict[ConversationStatus, set[ConversationStatus]] = {
    ConversationStatus.OPEN: {ConversationStatus.PENDING, ConversationStatus.CLOSED, ConversationStatus.ESCALATED},
    ConversationStatus.PENDING: {ConversationStatus.OPEN, ConversationStatus.CLOSED},
    ConversationStatus.ESCALATED: {ConversationStatus.OPEN, ConversationStatus.CLOSED},
    ConversationStatus.CLOSED: set(),
}


class InvalidTransitionError(Exception):
    """Conversation status change not allowed for this actor."""

    def __init__(self, current: str, target: str, actor: Actor):
        super().__init__(f"Cannot move conversation from {current} to {target} as {actor.value}")
        self.current = current
        self.target = target
        self.actor = actor


def can_transition(current: ConversationStatus, target: ConversationStatus, actor: Actor = Actor.SYSTEM) -> bool:
    if target not in ALLOWED_TRANSITIONS[current]:
        return False
    # Escalation is only ever undone by a person
    if current == ConversationStatus.ESCALATED and actor != Actor.AGENT:
        return False
    return True


def _higher_priority(a: str, b: str) -> str:
    return a if Priority(a).rank >= Priority(b).rank else b


def routing_snapshot(conversation: Conversation) -> dict[str, Any]:
    """Fields whose change is reported as a conversation state change."""
    return {
        "status": conversation.status,
        "priority": conversation.priority,
        "category": conversation.category,
        "assigned_team_id": conversation.assigned_team_id,
        "assigned_agent_id": conversation.assigned_agent_id,
    }


class ConversationRouter:
    """
    Applies status transitions, classifications and routing rules.

    Provides methods to:
    - Move a conversation through the status state machine
    - Apply a classification under the ordering guard
    - Evaluate tenant routing rules (first match wins)
    - Escalate a conversation
    """

    def __init__(self, repo: MessagingRepository, burst_window_seconds: int = 900):
        self.repo = repo
        self.burst_window = timedelta(seconds=burst_window_seconds)

    # =========================================================================
    # Status
    # =========================================================================

    def transition(
        self,
        conversation: Conversation,
        target: ConversationStatus | str,
        actor: Actor = Actor.SYSTEM,
    ) -> bool:
        """
        Change the conversation status.

        Returns:
            True if the status changed, False if it already had that status

        Raises:
            InvalidTransitionError: The change is not allowed for this actor
        """
        target = ConversationStatus(target)
        current = ConversationStatus(conversation.status)
        if current == target:
            return False
        if not can_transition(current, target, actor):
            raise InvalidTransitionError(current.value, target.value, actor)

        self.repo.set_conversation_status(conversation, target)
        logger.info(
            "Conversation status changed",
            extra={
                "conversation_id": str(conversation.id),
                "old_status": current.value,
                "new_status": target.value,
                "actor": actor.value,
            },
        )
        return True

    def on_customer_message(self, conversation: Conversation) -> bool:
        """A customer reply re-opens a pending conversation."""
        if conversation.status == ConversationStatus.PENDING.value:
            return self.transition(conversation, ConversationStatus.OPEN, Actor.CUSTOMER)
        return False

    # =========================================================================
    # Classification
    # =========================================================================

    def apply_classification(
        self,
        conversation: Conversation,
        message: Message,
        result: ClassificationResult,
        message_timestamp: datetime | None = None,
    ) -> bool:
        """
        Record a classification on the message and, unless it is stale, on the
        conversation.

        A classification for a message older than the conversation's last
        classification only enriches the message. Within the burst window
        priority is only raised, so a calm follow-up does not undo an urgent
        message a few seconds earlier.

        Returns:
            True if the conversation was updated
        """
        self.repo.set_message_classification(message, result.to_dict())

        timestamp = message_timestamp or utcnow()
        last = conversation.last_classified_at
        if last is not None and timestamp < last:
            logger.debug(
                "Skipping stale classification",
                extra={"conversation_id": str(conversation.id), "message_id": str(message.id)},
            )
            return False

        within_burst = last is not None and timestamp - last <= self.burst_window
        if within_burst or conversation.status == ConversationStatus.ESCALATED.value:
            conversation.priority = _higher_priority(conversation.priority, result.priority)
        else:
            conversation.priority = result.priority
        conversation.category = result.category
        conversation.last_classified_at = timestamp
        conversation.updated_at = utcnow()
        return True

    # =========================================================================
    # Routing rules
    # =========================================================================

    def _rule_matches(self, rule: RoutingRule, content: str, category: str, priority: str) -> bool:
        """All conditions present on the rule must hold."""
        conditions = rule.conditions or {}

        keywords = conditions.get("keywords") or []
        if keywords:
            text = (content or "").lower()
            if not any(str(k).lower() in text for k in keywords):
                return False

        if conditions.get("category") and conditions["category"] != category:
            return False

        if conditions.get("priority") and conditions["priority"] != priority:
            return False

        return True

    def apply_routing_rules(
        self,
        conversation: Conversation,
        content: str,
        category: str,
        priority: str,
    ) -> RoutingRule | None:
        """
        Evaluate the tenant's active rules in descending priority and apply the
        actions of the first match.

        Returns:
            The applied rule, None if no rule matched
        """
        for rule in self.repo.list_active_routing_rules(conversation.user_id):
            if not self._rule_matches(rule, content, category, priority):
                continue

            self._apply_actions(conversation, rule)
            logger.info(
                f"Applied routing rule '{rule.name}'",
                extra={"conversation_id": str(conversation.id), "rule_id": str(rule.id)},
            )
            return rule

        return None

    def _apply_actions(self, conversation: Conversation, rule: RoutingRule) -> None:
        actions = rule.actions or {}

        if actions.get("priority"):
            conversation.priority = Priority(actions["priority"]).value
        if actions.get("category"):
            conversation.category = actions["category"]

        if team_name := actions.get("assign_to_team"):
            team = self.repo.get_team_by_name(conversation.user_id, team_name)
            if team:
                conversation.assigned_team_id = team.id
            else:
                logger.warning(f"Routing rule '{rule.name}' names unknown team '{team_name}'")

        if agent_name := actions.get("assign_to_agent"):
            agent = self.repo.get_agent_by_name(conversation.user_id, agent_name)
            if agent:
                conversation.assigned_agent_id = agent.id
            else:
                logger.warning(f"Routing rule '{rule.name}' names unknown agent '{agent_name}'")

        conversation.updated_at = utcnow()

    # =========================================================================
    # Escalation
    # =========================================================================

    def handle_escalation(self, conversation: Conversation, classification: ClassificationResult) -> bool:
        """
        Escalate a conversation and tag it once.

        Returns:
            True if the conversation changed
        """
        changed = False
        current = ConversationStatus(conversation.status)
        if current != ConversationStatus.ESCALATED:
            if not can_transition(current, ConversationStatus.ESCALATED):
                logger.warning(
                    f"Cannot escalate a {current.value} conversation",
                    extra={"conversation_id": str(conversation.id)},
                )
                return False
            changed = self.transition(conversation, ConversationStatus.ESCALATED)

        changed = self.repo.add_conversation_tag(conversation, ESCALATED_TAG) or changed
        if changed:
            logger.info(
                f"Conversation escalated due to {classification.intent}",
                extra={
                    "conversation_id": str(conversation.id),
                    "urgency_score": classification.urgency_score,
                },
            )
        return changed
