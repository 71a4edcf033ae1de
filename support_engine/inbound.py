"""
Inbound Router
==============
Entry point for every customer email.

    knowledge lookup → classify → confidence gate →
        human_escalation           urgent escalation record
        FALLBACK  (< 70)           fallback text to the customer + escalation
        HUMAN_REVIEW (70..79)      approval item, nothing customer-visible
        AUTO_PROCEED (>= 80)
            order_cancellation     WorkflowEngine.start_request(CANCELLATION)
            address_change         WorkflowEngine.start_request(ADDRESS_CHANGE)
            anything else          grounded reply, or an approval item when
                                   there is nothing to ground on

Guaranteed arrival: every email ends as a sent reply, a workflow, an
approval item or an escalation record. process_email() wraps routing in one
boundary that escalates the raw email on any unexpected exception.

Approval decisions for items without a workflow (classification reviews,
ungrounded drafts) are also dispatched here; items that belong to a workflow
are handed to the engine.
"""
import logging
from enum import Enum

from pydantic import BaseModel

from . import templates
from .classifier import EmailClassifier
from .config import EngineSettings
from .confidence import ConfidenceGate, GateDecision, GateResult
from .engine import WorkflowEngine
from .errors import AutomationError, DeliveryFailed, DuplicateRequest, SafetyRejected
from .extraction import extract_order_number_regex
from .grounding import GroundedResponder
from .knowledge import KnowledgeGateway, lookup_knowledge
from .models import (
    ApprovalItem,
    Category,
    ClassificationResult,
    CustomerRequest,
    EscalationRecord,
    Priority,
    RequestKind,
)

logger = logging.getLogger(__name__)

WORKFLOW_KINDS: dict[Category, RequestKind] = {
    Category.ORDER_CANCELLATION: RequestKind.CANCELLATION,
    Category.ADDRESS_CHANGE:     RequestKind.ADDRESS_CHANGE,
}

REVIEW_APPROVAL     = "classification_review"
UNGROUNDED_APPROVAL = "ungrounded_response"


class RoutingAction(str, Enum):
    WORKFLOW   = "workflow"
    AUTO_REPLY = "auto_reply"
    REVIEW     = "review"
    FALLBACK   = "fallback"
    ESCALATED  = "escalated"


class RoutingOutcome(BaseModel):
    action: RoutingAction
    reason: str
    classification: ClassificationResult | None = None
    gate: GateResult | None = None
    workflow_id: str | None = None
    workflow_status: str | None = None
    approval_id: str | None = None
    escalation_id: str | None = None
    response_text: str | None = None


class InboundRouter:
    """
    Args:
        engine:     WorkflowEngine; its store, mailer and queues are shared.
        knowledge:  KnowledgeGateway over the seller's training content.
        classifier: EmailClassifier (DSPy).
        responder:  GroundedResponder (LangChain chat model).
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        knowledge: KnowledgeGateway,
        classifier: EmailClassifier,
        responder: GroundedResponder,
    ):
        self.engine      = engine
        self.knowledge   = knowledge
        self.classifier  = classifier
        self.responder   = responder
        self.mailer      = engine.mailer
        self.approvals   = engine.approvals
        self.escalations = engine.escalations

    async def process_email(self, request: CustomerRequest, settings: EngineSettings) -> RoutingOutcome:
        try:
            return await self._route(request, settings)
        except Exception as exc:
            logger.exception("[router] Unexpected error processing email %s", request.email_id)
            return await self._escalate(
                request, f"Unexpected error while processing email: {exc}", Priority.HIGH,
                metadata={"error_type": type(exc).__name__},
            )

    # ── Routing ─────────────────────────────────────────────────────────────

    async def _route(self, request: CustomerRequest, settings: EngineSettings) -> RoutingOutcome:
        knowledge      = await lookup_knowledge(self.knowledge, request.user_id, request.text)
        classification = await self.classifier.classify(request.subject, request.body, knowledge)

        if classification.category is Category.HUMAN_ESCALATION:
            return await self._escalate(
                request, "Customer requested a human", Priority.URGENT, classification=classification,
            )

        gate = ConfidenceGate.from_settings(settings).evaluate(classification)
        logger.info("[router] email=%s %s: %s", request.email_id, gate.decision.value, gate.reasoning)

        if gate.decision is GateDecision.FALLBACK:
            return await self._fallback(request, classification, gate)

        if gate.decision is GateDecision.HUMAN_REVIEW:
            draft = await self._review_draft(request, classification)
            return await self._submit_review(request, classification, gate, draft, REVIEW_APPROVAL)

        kind = WORKFLOW_KINDS.get(classification.category)
        if kind is not None:
            return await self._start_workflow(request, kind, settings, classification, gate)

        reply = await self.responder.generate(request.user_id, request.subject, request.body, classification.category)
        if reply is None:
            return await self._submit_review(
                request, classification, gate,
                templates.review_placeholder(classification.category.value), UNGROUNDED_APPROVAL,
            )

        failure = await self._reply(request, reply)
        if failure:
            return await self._escalate(request, failure, Priority.HIGH, classification=classification, gate=gate)
        return RoutingOutcome(
            action=RoutingAction.AUTO_REPLY,
            reason=gate.reasoning,
            classification=classification,
            gate=gate,
            response_text=reply,
        )

    async def _fallback(self, request: CustomerRequest, classification: ClassificationResult, gate: GateResult) -> RoutingOutcome:
        failure = await self._reply(request, gate.fallback_response)
        reason  = gate.reasoning if failure is None else f"{gate.reasoning}; {failure}"
        outcome = await self._escalate(request, reason, classification.priority, classification=classification, gate=gate)
        return outcome.model_copy(update={
            "action":        RoutingAction.FALLBACK,
            "response_text": gate.fallback_response if failure is None else None,
        })

    async def _review_draft(self, request: CustomerRequest, classification: ClassificationResult) -> str:
        kind = WORKFLOW_KINDS.get(classification.category)
        if kind is not None:
            number = extract_order_number_regex(request.text)
            if number:
                return templates.proposed_acknowledgment(kind, number)
            return templates.review_placeholder(classification.category.value)

        draft = await self.responder.generate(request.user_id, request.subject, request.body, classification.category)
        return draft or templates.review_placeholder(classification.category.value)

    async def _start_workflow(
        self,
        request: CustomerRequest,
        kind: RequestKind,
        settings: EngineSettings,
        classification: ClassificationResult,
        gate: GateResult | None = None,
    ) -> RoutingOutcome:
        try:
            workflow = await self.engine.start_request(request, kind, settings)
        except AutomationError as exc:
            # Duplicates already have a workflow someone is watching.
            priority = Priority.LOW if isinstance(exc, DuplicateRequest) else Priority.HIGH
            logger.info("[router] email=%s not automated: %s", request.email_id, exc)
            return await self._escalate(
                request, str(exc), priority,
                classification=classification, gate=gate,
                metadata={"error_type": type(exc).__name__, "request_kind": kind.value},
            )

        return RoutingOutcome(
            action=RoutingAction.WORKFLOW,
            reason=gate.reasoning if gate else "Approved for automation",
            classification=classification,
            gate=gate,
            workflow_id=workflow.id,
            workflow_status=workflow.status.value,
            approval_id=workflow.approval_id,
        )

    # ── Side effects ────────────────────────────────────────────────────────

    async def _reply(self, request: CustomerRequest, text: str) -> str | None:
        """Send a customer reply. Returns a failure reason, or None when sent."""
        subject = f"Re: {request.subject}" if request.subject else "Re: your message"
        try:
            await self.mailer.send_customer(request.user_id, request.customer_email, subject, text)
        except (SafetyRejected, DeliveryFailed) as exc:
            logger.warning("[router] Reply to email %s not sent: %s", request.email_id, exc)
            return f"Reply not sent: {exc}"
        return None

    async def _submit_review(
        self,
        request: CustomerRequest,
        classification: ClassificationResult,
        gate: GateResult,
        draft: str,
        approval_type: str,
    ) -> RoutingOutcome:
        metadata = {
            "approval_type": approval_type,
            "reasoning":     classification.reasoning,
            "gate":          gate.reasoning,
            "sources":       list(classification.sources),
            "request":       request.model_dump(mode="json"),
        }
        kind = WORKFLOW_KINDS.get(classification.category)
        if kind is not None:
            metadata["request_kind"] = kind.value

        stored = await self.approvals.submit(ApprovalItem(
            user_id=request.user_id,
            email_id=request.email_id,
            customer_email=request.customer_email,
            classification=classification.category,
            proposed_customer_response=draft,
            confidence=classification.confidence,
            metadata=metadata,
        ))
        if stored is None:
            return await self._escalate(request, "Approval item could not be persisted", Priority.HIGH,
                                        classification=classification, gate=gate)

        return RoutingOutcome(
            action=RoutingAction.REVIEW,
            reason=gate.reasoning,
            classification=classification,
            gate=gate,
            approval_id=stored.id,
        )

    async def _escalate(
        self,
        request: CustomerRequest,
        reason: str,
        priority: Priority,
        classification: ClassificationResult | None = None,
        gate: GateResult | None = None,
        metadata: dict | None = None,
    ) -> RoutingOutcome:
        details = {"subject": request.subject, **(metadata or {})}
        if classification is not None:
            details["category"]   = classification.category.value
            details["confidence"] = classification.confidence

        record = await self.escalations.escalate(EscalationRecord(
            user_id=request.user_id,
            email_id=request.email_id,
            customer_email=request.customer_email,
            priority=priority,
            reason=reason,
            metadata=details,
        ))
        return RoutingOutcome(
            action=RoutingAction.ESCALATED,
            reason=reason,
            classification=classification,
            gate=gate,
            escalation_id=record.id if record else None,
        )

    # ── Approval decisions ──────────────────────────────────────────────────

    async def approve(self, approval_id: str, settings: EngineSettings, reviewer: str | None = None) -> RoutingOutcome:
        """
        Execute an approved item.

        Workflow items replay the frozen plan through the engine. Reviewed
        cancellation/address-change emails start their workflow. Anything else
        sends the approved draft to the customer.
        """
        item = await self.approvals.get(approval_id)
        if item.workflow_id is not None:
            workflow = await self.engine.execute_approved(approval_id, settings, reviewer)
            return RoutingOutcome(
                action=RoutingAction.WORKFLOW,
                reason=f"Approved by {reviewer or 'unknown'}",
                workflow_id=workflow.id,
                workflow_status=workflow.status.value,
                approval_id=approval_id,
            )

        item    = await self.approvals.decide(approval_id, approve=True, reviewer=reviewer)
        request = CustomerRequest.model_validate(item.metadata.get("request") or {
            "user_id":        item.user_id,
            "email_id":       item.email_id,
            "customer_email": item.customer_email,
        })
        classification = ClassificationResult(
            category=item.classification,
            confidence=item.confidence,
            priority=Priority.MEDIUM,
            reasoning=item.metadata.get("reasoning", "Approved by reviewer"),
        )

        kind = item.metadata.get("request_kind")
        if kind:
            outcome = await self._start_workflow(request, RequestKind(kind), settings, classification)
            return outcome.model_copy(update={"approval_id": approval_id})

        failure = await self._reply(request, item.proposed_customer_response)
        if failure:
            return await self._escalate(request, failure, Priority.HIGH, classification=classification)
        return RoutingOutcome(
            action=RoutingAction.AUTO_REPLY,
            reason=f"Approved by {reviewer or 'unknown'}",
            classification=classification,
            approval_id=approval_id,
            response_text=item.proposed_customer_response,
        )

    async def reject(self, approval_id: str, reviewer: str | None = None) -> ApprovalItem:
        item = await self.approvals.get(approval_id)
        if item.workflow_id is not None:
            await self.engine.reject_approval(approval_id, reviewer)
            return await self.approvals.get(approval_id)
        return await self.approvals.decide(approval_id, approve=False, reviewer=reviewer)
