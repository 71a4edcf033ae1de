"""
Confidence Gate
===============
Maps a classification's confidence onto what the system may do next.

    confidence >= 80   AUTO_PROCEED   act without a human
    70 .. 79           HUMAN_REVIEW   nothing customer-visible until approved
    < 70               FALLBACK       send the category's "connecting you with
                                      a human" text and force escalation

Thresholds come from EngineSettings. Every GateResult carries a reasoning
string for the audit trail.
"""
from enum import Enum

from pydantic import BaseModel, ConfigDict

from .models import Category, ClassificationResult


class GateDecision(str, Enum):
    AUTO_PROCEED = "auto_proceed"
    HUMAN_REVIEW = "human_review"
    FALLBACK     = "fallback"


class GateResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: GateDecision
    should_escalate: bool
    reasoning: str
    fallback_response: str | None = None


FALLBACK_RESPONSES: dict[Category, str] = {
    Category.ORDER_STATUS: (
        "I don't have enough information to provide accurate details about your order status. "
        "Let me connect you with a human agent who can look up your specific order and provide "
        "you with the most current information."
    ),
    Category.PROMO_REFUND: (
        "I want to make sure I handle your billing concern correctly. Let me connect you with a "
        "human agent who can review your account details and provide the most accurate assistance "
        "with your refund request."
    ),
    Category.ORDER_CANCELLATION: (
        "To ensure your order is cancelled properly and on time, let me connect you with a human "
        "agent who can immediately process your cancellation request and confirm the details."
    ),
    Category.RETURN_REQUEST: (
        "I want to make sure we handle your return correctly. Let me connect you with a human "
        "agent who can review your order details and guide you through the return process."
    ),
    Category.SUBSCRIPTION_CHANGES: (
        "To avoid any issues with your subscription, let me connect you with a human agent who "
        "can safely make the changes you need to your account."
    ),
    Category.ADDRESS_CHANGE: (
        "To ensure your order is delivered to the correct address, let me connect you with a "
        "human agent who can update your shipping information right away."
    ),
    Category.PAYMENT_ISSUES: (
        "I want to make sure we resolve your payment concern properly. Let me connect you with a "
        "human agent who can securely review your account and payment details."
    ),
    Category.PRODUCT: (
        "I don't have enough information to answer your product question accurately. Let me "
        "connect you with a human agent who can provide you with detailed product information."
    ),
    Category.GENERAL: (
        "I want to make sure I understand your request correctly and provide you with the most "
        "helpful response. Let me connect you with a human agent who can assist you properly."
    ),
}


def fallback_response(category: Category) -> str:
    return FALLBACK_RESPONSES.get(category, FALLBACK_RESPONSES[Category.GENERAL])


class ConfidenceGate:
    def __init__(self, auto_proceed_threshold: int = 80, review_threshold: int = 70):
        if review_threshold > auto_proceed_threshold:
            raise ValueError("review_threshold must not exceed auto_proceed_threshold")
        self.auto_proceed_threshold = auto_proceed_threshold
        self.review_threshold       = review_threshold

    @classmethod
    def from_settings(cls, settings) -> "ConfidenceGate":
        return cls(settings.auto_proceed_threshold, settings.review_threshold)

    def evaluate(self, classification: ClassificationResult) -> GateResult:
        confidence = classification.confidence

        if confidence >= self.auto_proceed_threshold:
            return GateResult(
                decision=GateDecision.AUTO_PROCEED,
                should_escalate=False,
                reasoning=f"High confidence ({confidence}% >= {self.auto_proceed_threshold}%), proceeding automatically",
            )

        if confidence >= self.review_threshold:
            return GateResult(
                decision=GateDecision.HUMAN_REVIEW,
                should_escalate=False,
                reasoning=f"Medium confidence ({confidence}%), human review required before any customer-visible action",
            )

        return GateResult(
            decision=GateDecision.FALLBACK,
            should_escalate=True,
            reasoning=f"Low confidence ({confidence}% < {self.review_threshold}%), sending fallback response and escalating",
            fallback_response=fallback_response(classification.category),
        )
