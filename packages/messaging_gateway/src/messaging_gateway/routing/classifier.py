"""
Message Classifier

Classifies inbound customer messages into category, priority, urgency,
sentiment and intent.

A keyword classifier is always available. An optional primary classifier
(an LLM chat-completions endpoint) refines it; when the primary is missing or
fails, the keyword result is used as-is so classification never blocks
message persistence.
"""

import json
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from messaging_gateway.persistence.models import (
    Category,
    Conversation,
    Customer,
    LifecycleStage,
    Priority,
)
from messaging_gateway.persistence.repo import MessagingRepository
from messaging_gateway.providers.base import utcnow

logger = logging.getLogger(__name__)

URGENT_KEYWORDS = ("urgent", "emergency", "asap", "critical", "help")
SALES_KEYWORDS = ("price", "cost", "buy", "purchase", "quote", "demo")
SUPPORT_KEYWORDS = ("bug", "error", "problem", "issue", "not working")
RETENTION_KEYWORDS = ("cancel", "unsubscribe", "refund", "quit", "leave")
ENGAGEMENT_KEYWORDS = ("how", "when", "where", "what", "why")
POSITIVE_KEYWORDS = ("thank", "great", "awesome", "love", "perfect", "excellent", "amazing", "happy")
NEGATIVE_KEYWORDS = ("hate", "terrible", "awful", "bad", "worst", "angry", "frustrated", "disappointed")

ESCALATION_URGENCY = 8
PRIMARY_CONFIDENCE_THRESHOLD = 0.8

INTENTS = {
    Category.ACQUISITION.value: "sales_inquiry",
    Category.SUPPORT.value: "technical_support",
    Category.RETENTION.value: "cancellation_request",
}

RESPONSE_TYPES = {
    Priority.URGENT.value: "immediate",
    Priority.HIGH.value: "within_hour",
    Priority.MEDIUM.value: "within_day",
    Priority.LOW.value: "scheduled",
}


def _matches(text: str, keywords: tuple[str, ...]) -> list[str]:
    """Keywords found at a word start in already-lowercased text."""
    return [k for k in keywords if re.search(rf"\b{re.escape(k)}", text)]


@dataclass
class ClassificationContext:
    """Customer, business and conversation signals available to classifiers."""

    # Customer history
    total_conversations: int = 0
    days_since_last_contact: int = 0
    lifecycle_stage: str = LifecycleStage.LEAD.value
    previous_purchases: bool = False
    # Business context
    business_hours: bool = True
    current_load: str = "medium"
    # Message context
    is_first_message: bool = True
    conversation_length: int = 0
    previous_classifications: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ClassificationResult:
    """Outcome of classifying one message."""

    category: str = Category.GENERAL.value
    priority: str = Priority.MEDIUM.value
    urgency_score: int = 0
    intent: str = "general_inquiry"
    sentiment: str = "neutral"
    escalation_recommended: bool = False
    confidence: float = 0.6
    keywords_matched: list[str] = field(default_factory=list)
    suggested_response_type: str = "within_day"
    requires_human: bool = False
    source: str = "keywords"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Classifier(Protocol):
    async def classify(self, content: str, context: ClassificationContext) -> ClassificationResult: ...


class KeywordClassifier:
    """Rule-based classifier over fixed keyword lists."""

    def classify(self, content: str, context: ClassificationContext | None = None) -> ClassificationResult:
        text = (content or "").lower()
        context = context or ClassificationContext()

        priority = Priority.MEDIUM.value
        category = Category.GENERAL.value
        urgency = 0
        confidence = 0.6
        matched: list[str] = []

        urgent = _matches(text, URGENT_KEYWORDS)
        if urgent:
            priority = Priority.URGENT.value
            urgency = 9
            matched += urgent

        if sales := _matches(text, SALES_KEYWORDS):
            category = Category.ACQUISITION.value
            confidence = 0.7
            matched += sales
            # Unqualified contacts asking about buying are hot leads
            if context.lifecycle_stage in (LifecycleStage.LEAD.value, "unknown") and priority != Priority.URGENT.value:
                priority = Priority.HIGH.value
        elif support := _matches(text, SUPPORT_KEYWORDS):
            category = Category.SUPPORT.value
            confidence = 0.8
            urgency = max(urgency, 6)
            matched += support
        elif retention := _matches(text, RETENTION_KEYWORDS):
            category = Category.RETENTION.value
            confidence = 0.8
            urgency = max(urgency, 7)
            matched += retention
        elif _matches(text, ENGAGEMENT_KEYWORDS):
            category = Category.ENGAGEMENT.value

        sentiment = "neutral"
        if _matches(text, POSITIVE_KEYWORDS):
            sentiment = "positive"
        elif _matches(text, NEGATIVE_KEYWORDS):
            sentiment = "negative"
            urgency += 1

        urgency = min(urgency, 10)
        escalate = urgency >= ESCALATION_URGENCY

        return ClassificationResult(
            category=category,
            priority=priority,
            urgency_score=urgency,
            intent=INTENTS.get(category, "general_inquiry"),
            sentiment=sentiment,
            escalation_recommended=escalate,
            confidence=confidence,
            keywords_matched=matched,
            suggested_response_type=RESPONSE_TYPES[priority],
            requires_human=escalate or category == Category.RETENTION.value,
        )


SYSTEM_PROMPT = """You classify customer messages for a multi-channel support inbox.

Categories: acquisition, engagement, retention, support, general.
Priorities: low, medium, high, urgent.
Sentiment: positive, neutral, negative.
Urgency score: integer 0-10. Confidence: 0-1.

Context:
{context}

Respond ONLY with JSON:
{{"category": "...", "priority": "...", "urgency_score": 0, "sentiment": "...",
"intent": "...", "confidence": 0.0, "keywords_matched": [], "escalation_recommended": false,
"requires_human": false}}"""


class LLMClassifier:
    """
    Primary classifier backed by an OpenAI-compatible chat completions API.

    Raises on any failure; MessageClassifier falls back to keywords.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float = 10.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def classify(self, content: str, context: ClassificationContext) -> ClassificationResult:
        client = await self._get_client()
        response = await client.post(
            f"{self.api_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "temperature": 0.3,
                "max_tokens": 500,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT.format(context=json.dumps(context.to_dict()))},
                    {"role": "user", "content": f"Classify this message: {content!r}"},
                ],
            },
        )
        response.raise_for_status()
        raw = response.json()["choices"][0]["message"]["content"]
        data = json.loads(raw)

        category = data.get("category")
        priority = data.get("priority")
        if category not in {c.value for c in Category} or priority not in {p.value for p in Priority}:
            raise ValueError(f"Unexpected classification: {category}/{priority}")

        return ClassificationResult(
            category=category,
            priority=priority,
            urgency_score=max(0, min(int(data.get("urgency_score", 0)), 10)),
            intent=data.get("intent") or INTENTS.get(category, "general_inquiry"),
            sentiment=data.get("sentiment") or "neutral",
            escalation_recommended=bool(data.get("escalation_recommended")),
            confidence=float(data.get("confidence", 0)),
            keywords_matched=list(data.get("keywords_matched") or []),
            suggested_response_type=RESPONSE_TYPES.get(priority, "within_day"),
            requires_human=bool(data.get("requires_human")),
            source="llm",
        )


def merge_results(primary: ClassificationResult, fallback: ClassificationResult) -> ClassificationResult:
    """
    Combine a primary result with the keyword result.

    Category and priority come from the primary only when it is confident;
    urgency is the max of both; either side can recommend escalation.
    """
    confident = primary.confidence > PRIMARY_CONFIDENCE_THRESHOLD
    category = primary.category if confident else fallback.category
    priority = primary.priority if confident else fallback.priority
    urgency = max(primary.urgency_score, fallback.urgency_score)
    escalate = (
        primary.escalation_recommended
        or fallback.escalation_recommended
        or urgency >= ESCALATION_URGENCY
    )

    return ClassificationResult(
        category=category,
        priority=priority,
        urgency_score=urgency,
        intent=primary.intent or fallback.intent,
        sentiment=primary.sentiment or fallback.sentiment,
        escalation_recommended=escalate,
        confidence=max(primary.confidence, fallback.confidence),
        keywords_matched=list(dict.fromkeys(primary.keywords_matched + fallback.keywords_matched)),
        suggested_response_type=RESPONSE_TYPES.get(priority, fallback.suggested_response_type),
        requires_human=primary.requires_human or fallback.requires_human or escalate,
        source="merged",
    )


class MessageClassifier:
    """Primary classifier (optional) with keyword fallback."""

    def __init__(self, primary: Classifier | None = None, fallback: KeywordClassifier | None = None):
        self.primary = primary
        self.fallback = fallback or KeywordClassifier()

    async def classify(self, content: str, context: ClassificationContext | None = None) -> ClassificationResult:
        context = context or ClassificationContext()
        keyword_result = self.fallback.classify(content, context)
        if self.primary is None:
            return keyword_result

        try:
            primary_result = await self.primary.classify(content, context)
        except Exception as e:
            logger.warning(f"Primary classifier failed, using keywords: {type(e).__name__}: {e}")
            return keyword_result

        return merge_results(primary_result, keyword_result)

    async def aclose(self) -> None:
        close = getattr(self.primary, "aclose", None)
        if close is not None:
            await close()


def build_classification_context(
    repo: MessagingRepository,
    conversation: Conversation,
    customer: Customer,
    now: datetime | None = None,
    business_hours: tuple[int, int] = (9, 17),
    last_contact_at: datetime | None = None,
) -> ClassificationContext:
    """
    Gather context for classifying the latest message of a conversation.

    Called after the message is stored, so a conversation with one message
    is on its first message. The customer's interaction time is already
    touched by then; pass the value read before the touch as
    ``last_contact_at``.
    """
    now = now or utcnow()
    message_count = repo.count_messages(conversation.id)

    last_contact_at = last_contact_at or customer.last_interaction_at
    days_since = 0
    if last_contact_at:
        days_since = max((now - last_contact_at).days, 0)

    previous = [
        c.get("category")
        for c in repo.recent_classifications(conversation.id, limit=5)
        if c.get("category")
    ]
    start, end = business_hours

    return ClassificationContext(
        total_conversations=repo.count_conversations_for_customer(customer.id),
        days_since_last_contact=days_since,
        lifecycle_stage=customer.lifecycle_stage,
        previous_purchases=customer.lifecycle_stage == LifecycleStage.CUSTOMER.value,
        business_hours=start <= now.hour <= end,
        current_load="medium",
        is_first_message=message_count <= 1,
        conversation_length=message_count,
        previous_classifications=previous,
    )


def classification_stats(results: list[ClassificationResult]) -> dict[str, Any]:
    """Aggregate counts over a batch of classifications."""
    total = len(results)
    return {
        "total": total,
        "by_category": dict(Counter(r.category for r in results)),
        "by_priority": dict(Counter(r.priority for r in results)),
        "by_sentiment": dict(Counter(r.sentiment for r in results)),
        "average_urgency": (sum(r.urgency_score for r in results) / total) if total else 0,
        "requires_human_count": sum(1 for r in results if r.requires_human),
        "escalation_count": sum(1 for r in results if r.escalation_recommended),
    }
