"""
Tests for support_engine/classifier.py
======================================
Covers:
  - human-escalation keywords short-circuit before any model call
  - model output normalisation (category, priority, confidence clamp)
  - grounded flag and sources follow the knowledge result
  - knowledge formatting for the three knowledge outcomes
  - any model failure degrades to general / confidence 0

All DSPy calls are mocked; no real LLM needed.
"""
from unittest.mock import MagicMock, patch

import pytest

import support_engine.classifier as cm
from support_engine.classifier import (
    EmailClassifier,
    clamp_confidence,
    detect_human_escalation,
    format_knowledge,
    normalize_category,
    normalize_priority,
)
from support_engine.knowledge import KnowledgeResult
from support_engine.models import Category, Priority


# ---------------------------------------------------------------------------
# Helpers: create a fake dspy.Predict result
# ---------------------------------------------------------------------------

def _make_result(category="order_cancellation", confidence=88, priority="high", reasoning="clear request"):
    result = MagicMock()
    result.category   = category
    result.confidence = confidence
    result.priority   = priority
    result.reasoning  = reasoning
    return result


async def _classify(subject="Cancel", body="Please cancel order #1001", knowledge=None, **result_fields):
    cm._predict  = None
    fake_predict = MagicMock(return_value=_make_result(**result_fields))
    with patch.object(cm, "_get_predict", return_value=fake_predict):
        classification = await EmailClassifier().classify(subject, body, knowledge)
    return classification, fake_predict


# ---------------------------------------------------------------------------
# Human escalation
# ---------------------------------------------------------------------------

class TestHumanEscalation:
    @pytest.mark.parametrize("text", [
        "I want to talk to a human",
        "Let me speak to someone",
        "Please escalate this",
        "transfer me to an agent",
    ])
    def test_keywords_detected(self, text):
        assert detect_human_escalation("", text)

    async def test_short_circuits_the_model(self):
        classification, fake_predict = await _classify(body="Can I speak to a human please?")

        assert classification.category is Category.HUMAN_ESCALATION
        assert classification.priority is Priority.URGENT
        assert classification.confidence == 95
        fake_predict.assert_not_called()


# ---------------------------------------------------------------------------
# Model path
# ---------------------------------------------------------------------------

class TestClassify:
    async def test_maps_model_output(self):
        classification, fake_predict = await _classify()

        assert classification.category is Category.ORDER_CANCELLATION
        assert classification.confidence == 88
        assert classification.priority is Priority.HIGH
        assert not classification.grounded
        assert "No company-specific knowledge" in fake_predict.call_args.kwargs["knowledge"]

    async def test_grounded_on_relevant_knowledge(self):
        knowledge = KnowledgeResult(
            relevant_content=["Orders can be cancelled within 24 hours."],
            sources=["faq/cancellations"],
            has_training_data=True,
        )
        classification, fake_predict = await _classify(knowledge=knowledge)

        assert classification.grounded
        assert classification.sources == ("faq/cancellations",)
        assert fake_predict.call_args.kwargs["knowledge"] == "Orders can be cancelled within 24 hours."

    async def test_unknown_category_fails_closed(self):
        classification, _ = await _classify(category="weather")

        assert classification.category is Category.GENERAL
        assert classification.confidence == 0
        assert "Classification failed" in classification.reasoning

    async def test_model_exception_fails_closed(self):
        cm._predict = None
        with patch.object(cm, "_get_predict", return_value=MagicMock(side_effect=RuntimeError("rate limited"))):
            classification = await EmailClassifier().classify("Where is my order", "Order #1001?")

        assert classification.category is Category.GENERAL
        assert classification.confidence == 0
        assert "rate limited" in classification.reasoning

    async def test_confidence_is_clamped(self):
        classification, _ = await _classify(confidence="140")
        assert classification.confidence == 100


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------

class TestNormalisation:
    @pytest.mark.parametrize("raw, expected", [
        ("order_cancellation", Category.ORDER_CANCELLATION),
        ("Order Cancellation.", Category.ORDER_CANCELLATION),
        ("  address_change\n", Category.ADDRESS_CHANGE),
        ("category: order_status", Category.ORDER_STATUS),
    ])
    def test_category(self, raw, expected):
        assert normalize_category(raw) is expected

    def test_model_cannot_pick_human_escalation_by_substring(self):
        with pytest.raises(ValueError):
            normalize_category("maybe human_escalation_needed")

    @pytest.mark.parametrize("raw, expected", [
        ("HIGH", Priority.HIGH),
        ("urgent!", Priority.URGENT),
        ("whatever", Priority.MEDIUM),
    ])
    def test_priority(self, raw, expected):
        assert normalize_priority(raw) is expected

    @pytest.mark.parametrize("raw, expected", [(85, 85), ("72.6", 73), (-5, 0), (250, 100)])
    def test_clamp(self, raw, expected):
        assert clamp_confidence(raw) == expected

    def test_format_knowledge_outcomes(self):
        assert "No company-specific knowledge" in format_knowledge(None)
        assert "none of it matches" in format_knowledge(KnowledgeResult(has_training_data=True))
        passages = KnowledgeResult(relevant_content=["a", "b"], has_training_data=True)
        assert format_knowledge(passages) == "a\n\n---\n\nb"
