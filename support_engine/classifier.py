"""
Email Classifier (DSPy)
=======================
Turns (subject, body) into a ClassificationResult: category, confidence,
priority, reasoning and the knowledge sources that grounded the decision.

Order of checks:
  1. Explicit human-escalation language ("human", "agent", "escalate",
     "speak to", "transfer") short-circuits to human_escalation / urgent / 95.
     Nothing else is consulted, not even the knowledge base.
  2. Otherwise dspy.Predict(ClassifyEmail) runs with the retrieved knowledge
     passages as context. With no training data the model is told so and is
     expected to lower its confidence.

Failure semantics:
  Any exception from the model, or output we cannot map onto a category,
  yields category=general, confidence=0, which the ConfidenceGate always
  escalates. A classification is never silently dropped.
"""
import asyncio
import logging
import re

import dspy

from .knowledge import KnowledgeResult
from .models import Category, ClassificationResult, Priority

logger = logging.getLogger(__name__)

HUMAN_ESCALATION_KEYWORDS: tuple[str, ...] = ("human", "agent", "escalate", "speak to", "transfer")

MAX_CONTEXT_PASSAGES = 5
MAX_PASSAGE_CHARS    = 1500


class ClassifyEmail(dspy.Signature):
    """
    Classify a customer-service email for an e-commerce store.

    Categories:
      order_status          where is my order, tracking, delivery dates
      promo_refund          billing, promo codes, refund concerns
      order_cancellation    stop an order before it ships
      return_request        return or exchange a received product
      subscription_changes  modify, pause or end a subscription
      address_change        update the shipping address of an order
      payment_issues        failed charges, card problems
      product               product features or specifications
      general               everything else

    Understand the underlying intent, not just keywords. Use the company
    knowledge, when given, to inform the decision. Be honest about confidence:
    80-100 only when very certain, 60-79 when reasonably sure, below 60 when
    the request is unclear or the knowledge does not cover it.
    """
    subject:   str = dspy.InputField(desc="Email subject line")
    body:      str = dspy.InputField(desc="Email body text")
    knowledge: str = dspy.InputField(desc="Relevant company knowledge, or a note that none exists")

    category:   str = dspy.OutputField(desc="Exactly one category name from the list")
    confidence: int = dspy.OutputField(desc="Integer 0-100")
    priority:   str = dspy.OutputField(desc="Exactly one of: low | medium | high | urgent")
    reasoning:  str = dspy.OutputField(desc="Why this category and confidence were chosen")


_predict: dspy.Predict | None = None


def _get_predict() -> dspy.Predict:
    global _predict
    if _predict is None:
        _predict = dspy.Predict(ClassifyEmail)
    return _predict


def detect_human_escalation(subject: str, body: str) -> bool:
    text = f"{subject} {body}".lower()
    return any(keyword in text for keyword in HUMAN_ESCALATION_KEYWORDS)


def format_knowledge(knowledge: KnowledgeResult | None) -> str:
    if knowledge is None or not knowledge.has_training_data:
        return "No company-specific knowledge is available. Rely on general customer service patterns and lower confidence accordingly."
    if not knowledge.relevant_content:
        return "The company has training content, but none of it matches this email."
    passages = [p[:MAX_PASSAGE_CHARS] for p in knowledge.relevant_content[:MAX_CONTEXT_PASSAGES]]
    return "\n\n---\n\n".join(passages)


def normalize_category(raw: str) -> Category:
    """Map loose model output ("Order Cancellation.", "cancellation") onto a Category."""
    cleaned = re.sub(r"[^a-z_ ]", "", raw.strip().lower()).replace(" ", "_")
    try:
        return Category(cleaned)
    except ValueError:
        pass
    for category in Category:
        if category is not Category.HUMAN_ESCALATION and category.value in cleaned:
            return category
    raise ValueError(f"Unrecognised category: {raw!r}")


def normalize_priority(raw: str) -> Priority:
    cleaned = raw.strip().lower()
    for priority in (Priority.URGENT, Priority.HIGH, Priority.MEDIUM, Priority.LOW):
        if priority.value in cleaned:
            return priority
    return Priority.MEDIUM


def clamp_confidence(raw) -> int:
    value = int(round(float(raw)))
    return max(0, min(100, value))


def human_escalation_result() -> ClassificationResult:
    return ClassificationResult(
        category=Category.HUMAN_ESCALATION,
        confidence=95,
        priority=Priority.URGENT,
        reasoning="Customer explicitly requested human assistance",
    )


def failed_classification(reason: str) -> ClassificationResult:
    return ClassificationResult(
        category=Category.GENERAL,
        confidence=0,
        priority=Priority.MEDIUM,
        reasoning=f"Classification failed, escalating to human: {reason}",
    )


class EmailClassifier:
    """Callable classifier. The DSPy call is synchronous, so it runs in a worker thread."""

    async def classify(self, subject: str, body: str, knowledge: KnowledgeResult | None = None) -> ClassificationResult:
        if detect_human_escalation(subject, body):
            logger.info("[classifier] Human escalation language detected")
            return human_escalation_result()

        try:
            result = await asyncio.to_thread(
                _get_predict(),
                subject=subject,
                body=body,
                knowledge=format_knowledge(knowledge),
            )
            category   = normalize_category(result.category)
            confidence = clamp_confidence(result.confidence)
        except Exception as exc:
            logger.warning("[classifier] Classification failed: %s", exc)
            return failed_classification(str(exc))

        grounded = bool(knowledge and knowledge.relevant_content)
        classification = ClassificationResult(
            category=category,
            confidence=confidence,
            priority=normalize_priority(str(result.priority)),
            reasoning=str(result.reasoning),
            sources=tuple(knowledge.sources) if grounded else (),
            grounded=grounded,
        )
        logger.info(
            "[classifier] category=%s confidence=%d priority=%s grounded=%s",
            classification.category.value, classification.confidence,
            classification.priority.value, grounded,
        )
        return classification
