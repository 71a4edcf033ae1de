"""
Approval & Escalation Queues
============================
The human-in-the-loop gates.

Two-phase pattern for every write:

  1. plan    pure, retryable: plan_approval() builds the complete ApprovalItem
             (proposed customer text + step-by-step planned actions) from the
             workflow snapshot alone.
  2. persist one narrow boundary: try the write; on failure write a minimal
             fallback record; if that fails too, log a critical PAGE: line.

Planned actions distinguish what is already decided from what waits for the
human:

    COMPLETED: Eligibility check - Order #1001 is eligible (...)
    COMPLETED: Customer email drafted (awaiting your approval)
    PENDING: Send urgent warehouse email "URGENT: Cancel Order #1001" to ...
    ...

The plan is frozen into the approval metadata. Executing an approval never
re-derives eligibility; it replays the stored decision.
"""
import logging
from datetime import datetime

from . import templates
from .config import EngineSettings
from .errors import ApprovalNotFound, ApprovalStateError
from .models import (
    ApprovalItem,
    ApprovalStatus,
    Category,
    EligibilityResult,
    EscalationRecord,
    FulfillmentMethod,
    RequestKind,
    Workflow,
)
from .store import Store

logger = logging.getLogger(__name__)

PLAN_PROCEED = "proceed"
PLAN_REJECT  = "reject"

_KIND_CATEGORY = {
    RequestKind.CANCELLATION:   Category.ORDER_CANCELLATION,
    RequestKind.ADDRESS_CHANGE: Category.ADDRESS_CHANGE,
}


def plan_decision(eligibility: EligibilityResult) -> str:
    """Uncertain eligibility is proposed as "proceed" so the reviewer decides."""
    if eligibility.is_eligible or not eligibility.certain:
        return PLAN_PROCEED
    return PLAN_REJECT


def _backend_steps(workflow: Workflow, settings: EngineSettings) -> list[str]:
    number   = workflow.order_number
    side     = "order cancellation and refund" if workflow.kind is RequestKind.CANCELLATION else "shipping address update"
    method   = workflow.fulfillment_method

    if method is FulfillmentMethod.WAREHOUSE_EMAIL:
        subject = templates.warehouse_request(workflow.kind, number, workflow.new_address, settings.test_mode).subject
        reply   = '"Canceled" or "Cannot cancel"' if workflow.kind is RequestKind.CANCELLATION else '"Updated" or "Cannot update"'
        return [
            f'PENDING: Send urgent warehouse email "{subject}" to {settings.warehouse_recipient() or "(not configured)"}',
            'PENDING: Update workflow status to "awaiting_warehouse"',
            f"PENDING: Wait for warehouse response ({reply}), escalate after {settings.warehouse_reply_timeout}",
            f"PENDING: Process {side} in the store if confirmed",
            "PENDING: Send final customer notification",
        ]
    if method is FulfillmentMethod.SHIPBOB:
        action = "cancellation of every active shipment" if workflow.kind is RequestKind.CANCELLATION else "address change (completed by staff in ShipBob)"
        return [
            f"PENDING: Check order #{number} in ShipBob",
            f"PENDING: Attempt ShipBob {action}",
            f"PENDING: Process {side} in the store if successful",
            "PENDING: Send final customer notification",
        ]
    if method is FulfillmentMethod.SHIPSTATION:
        return [
            f"PENDING: Check order #{number} in ShipStation for tracking numbers",
            "PENDING: Attempt ShipStation " + ("cancellation" if workflow.kind is RequestKind.CANCELLATION else "address update"),
            f"PENDING: Process {side} in the store if successful",
            "PENDING: Send final customer notification",
        ]
    return [
        "PENDING: Mark order for manual processing",
        'PENDING: Update status to "awaiting_manual" for human review',
    ]


def planned_actions(workflow: Workflow, eligibility: EligibilityResult, settings: EngineSettings) -> list[str]:
    number = workflow.order_number
    noun   = "cancellation" if workflow.kind is RequestKind.CANCELLATION else "address change"

    if plan_decision(eligibility) == PLAN_REJECT:
        return [
            f"COMPLETED: Eligibility check - Order #{number} is NOT eligible for {noun} ({eligibility.reason})",
            "COMPLETED: Rejection email drafted - explains the order is outside the window (awaiting your approval)",
            "PENDING: Send drafted rejection email (if approved)",
            "PENDING: Offer return process instead",
        ]

    if eligibility.certain:
        check = f"COMPLETED: Eligibility check - Order #{number} is eligible for {noun} ({eligibility.reason})"
    else:
        check = f"COMPLETED: Eligibility check - UNCERTAIN for Order #{number} ({eligibility.reason}); confirm before approving"

    return [
        check,
        "COMPLETED: Customer email drafted (awaiting your approval)",
        "PENDING: Send drafted customer email (if approved)",
        *_backend_steps(workflow, settings),
    ]


def proposed_text(workflow: Workflow, eligibility: EligibilityResult) -> str:
    if plan_decision(eligibility) == PLAN_REJECT:
        return templates.time_window_rejection(workflow.kind, workflow.order_number).text
    return templates.proposed_acknowledgment(workflow.kind, workflow.order_number)


def plan_approval(
    workflow: Workflow,
    eligibility: EligibilityResult,
    settings: EngineSettings,
    created_at: datetime | None = None,
) -> ApprovalItem:
    """Build the approval item for a workflow. Pure: no I/O, safe to retry."""
    decision = plan_decision(eligibility)
    if not eligibility.certain:
        confidence = 50
    else:
        confidence = 90 if decision == PLAN_PROCEED else 95

    extra = {"created_at": created_at} if created_at is not None else {}
    return ApprovalItem(
        user_id=workflow.user_id,
        email_id=workflow.email_id,
        customer_email=workflow.customer_email,
        workflow_id=workflow.id,
        classification=_KIND_CATEGORY[workflow.kind],
        proposed_customer_response=proposed_text(workflow, eligibility),
        confidence=confidence,
        metadata={
            "automation_type":    workflow.kind.value,
            "order_number":       workflow.order_number,
            "fulfillment_method": workflow.fulfillment_method.value,
            "eligibility":        eligibility.model_dump(mode="json"),
            "plan":               decision,
            "planned_actions":    planned_actions(workflow, eligibility, settings),
        },
        **extra,
    )


class ApprovalQueue:
    def __init__(self, store: Store):
        self.store = store

    async def submit(self, item: ApprovalItem) -> ApprovalItem | None:
        """
        Persist with guaranteed arrival. Returns the stored item (possibly the
        minimal fallback) or None when both writes failed and a page was raised.
        """
        try:
            return await self.store.create_approval(item)
        except Exception as exc:
            primary_error = exc
            logger.error("[approval] Primary write failed for email %s: %s", item.email_id, exc)

        fallback = ApprovalItem(
            user_id=item.user_id,
            email_id=item.email_id,
            customer_email=item.customer_email,
            workflow_id=item.workflow_id,
            classification=item.classification,
            proposed_customer_response=item.proposed_customer_response,
            confidence=0,
            metadata={"fallback": True, "primary_error": str(primary_error)},
        )
        try:
            return await self.store.create_approval(fallback)
        except Exception as exc:
            logger.critical(
                "PAGE: approval item lost for email %s workflow %s (primary: %s, fallback: %s)",
                item.email_id, item.workflow_id, primary_error, exc,
            )
            return None

    async def get(self, approval_id: str) -> ApprovalItem:
        item = await self.store.get_approval(approval_id)
        if item is None:
            raise ApprovalNotFound(f"Approval item {approval_id} not found")
        return item

    async def decide(self, approval_id: str, approve: bool, reviewer: str | None = None) -> ApprovalItem:
        item = await self.get(approval_id)
        if item.status is not ApprovalStatus.PENDING:
            raise ApprovalStateError(f"Approval item {approval_id} is already {item.status.value}")

        status  = ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED
        decided = await self.store.decide_approval(item, status, reviewer)
        if decided is None:
            raise ApprovalStateError(f"Approval item {approval_id} was decided concurrently")
        logger.info("[approval] %s %s by %s", approval_id, status.value, reviewer or "unknown")
        return decided


class EscalationQueue:
    def __init__(self, store: Store):
        self.store = store

    async def escalate(self, record: EscalationRecord) -> EscalationRecord | None:
        """Same guaranteed-arrival contract as ApprovalQueue.submit()."""
        try:
            stored = await self.store.create_escalation(record)
            logger.info("[escalation] %s priority=%s reason=%s", stored.id, stored.priority.value, stored.reason)
            return stored
        except Exception as exc:
            primary_error = exc
            logger.error("[escalation] Primary write failed for email %s: %s", record.email_id, exc)

        fallback = EscalationRecord(
            user_id=record.user_id,
            email_id=record.email_id,
            workflow_id=record.workflow_id,
            customer_email=record.customer_email,
            priority=record.priority,
            reason=record.reason[:500],
            metadata={"fallback": True, "primary_error": str(primary_error)},
        )
        try:
            return await self.store.create_escalation(fallback)
        except Exception as exc:
            logger.critical(
                "PAGE: escalation lost for email %s workflow %s reason=%r (primary: %s, fallback: %s)",
                record.email_id, record.workflow_id, record.reason, primary_error, exc,
            )
            return None
