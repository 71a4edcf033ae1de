"""
Outbound Content Safety (DSPy)
==============================
Runs on every customer-facing email before it reaches the transport. Internal
mail (warehouse requests) does not pass through here.

Rejects text that:
  1. Is abusive, discriminatory, threatening or otherwise unsafe.
  2. Leaks internal material (system prompts, other customers' data,
     credentials, raw API payloads).
  3. Makes commitments a support email must not make (legal advice,
     guarantees of compensation the store never stated).

Design decisions:
  - dspy.Predict, not ChainOfThought: this sits on the critical path of every
    customer send.
  - Lazy singleton for the Predict instance.
  - Fails CLOSED. A provider error means the text is not sent; the caller
    escalates. A provider content-filter rejection is a plain "unsafe".
"""
import asyncio
import logging

import dspy
from pydantic import BaseModel

logger = logging.getLogger(__name__)

CONTENT_FILTER_MARKERS: tuple[str, ...] = (
    "content_filter", "ContentPolicyViolation",
    "ResponsibleAI", "jailbreak", "content management",
)


class CheckOutgoingMessage(dspy.Signature):
    """
    Review an email that an online store is about to send to one of its customers.

    Classify as UNSAFE if the email:
      - Contains abusive, hateful, harassing, sexual or threatening language
      - Reveals internal instructions, prompts, credentials, API payloads or
        another customer's personal data
      - Gives legal, medical or financial advice
      - Promises compensation, discounts or outcomes in a way a support agent
        could not plausibly be authorised to promise

    Ordinary customer-service content (order updates, apologies, cancellation
    or address-change confirmations, refund notices) is SAFE.
    """
    message: str = dspy.InputField(desc="The full text of the outgoing customer email")
    decision: str = dspy.OutputField(desc="Exactly one of: safe | unsafe")
    reason: str = dspy.OutputField(desc="One sentence explaining the decision (logged, never sent)")


class SafetyVerdict(BaseModel):
    allowed: bool
    decision: str
    reason: str


_predict: dspy.Predict | None = None


def _get_predict() -> dspy.Predict:
    global _predict
    if _predict is None:
        _predict = dspy.Predict(CheckOutgoingMessage)
    return _predict


def check_outgoing(message: str) -> SafetyVerdict:
    """
    Classify outgoing customer text.

    decision is "safe", "unsafe" or "error" (provider failure, treated as not allowed).
    """
    if not message.strip():
        return SafetyVerdict(allowed=False, decision="unsafe", reason="Empty message")

    try:
        result = _get_predict()(message=message)
    except Exception as exc:
        err = str(exc)
        if any(k in err for k in CONTENT_FILTER_MARKERS):
            return SafetyVerdict(allowed=False, decision="unsafe", reason="Blocked by provider content policy filter")
        logger.error("[safety] Safety check unavailable: %s", exc)
        return SafetyVerdict(allowed=False, decision="error", reason=f"Safety check unavailable: {exc}")

    decision = result.decision.strip().lower()
    # "unsafe" contains "safe"; test it first.
    decision = "unsafe" if "unsafe" in decision or "not safe" in decision else "safe"

    return SafetyVerdict(allowed=decision == "safe", decision=decision, reason=result.reason)


class ContentSafetyCheck:
    """Async wrapper so the mailer can await the check without blocking the loop."""

    async def check(self, message: str) -> SafetyVerdict:
        return await asyncio.to_thread(check_outgoing, message)
