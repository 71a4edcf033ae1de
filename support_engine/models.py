"""
Data Model
==========
Pydantic records shared by every component of the engine.

  ClassificationResult  immutable output of the classifier, consumed once by the router
  EligibilityResult     time-window verdict, embedded into the workflow snapshot
  Workflow              one customer request moving through the state machine
  WorkflowEvent         append-only audit row per transition
  ApprovalItem          proposed text + frozen plan awaiting human sign-off
  EscalationRecord      work item for the human escalation queue

Statuses vs steps:
  `step` is the generic state-machine position, identical for every request kind.
  `status` is the business-facing label (canceled / cannot_change / ...), which
  depends on the request kind and is what dashboards and the customer-facing
  history show.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Enumerations ────────────────────────────────────────────────────────────

class Category(str, Enum):
    ORDER_STATUS         = "order_status"
    PROMO_REFUND         = "promo_refund"
    ORDER_CANCELLATION   = "order_cancellation"
    RETURN_REQUEST       = "return_request"
    SUBSCRIPTION_CHANGES = "subscription_changes"
    ADDRESS_CHANGE       = "address_change"
    PAYMENT_ISSUES       = "payment_issues"
    PRODUCT              = "product"
    HUMAN_ESCALATION     = "human_escalation"
    GENERAL              = "general"


class Priority(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"
    URGENT = "urgent"


class RequestKind(str, Enum):
    CANCELLATION   = "cancellation"
    ADDRESS_CHANGE = "address_change"


class FulfillmentMethod(str, Enum):
    WAREHOUSE_EMAIL  = "warehouse_email"
    SHIPBOB          = "shipbob"
    SHIPSTATION      = "shipstation"
    SELF_FULFILLMENT = "self_fulfillment"


class WorkflowStep(str, Enum):
    INTAKE              = "intake"
    ELIGIBILITY_CHECKED = "eligibility_checked"
    INELIGIBLE_NOTIFIED = "ineligible_notified"
    PENDING_APPROVAL    = "pending_approval"
    ACKNOWLEDGING       = "acknowledging"
    BACKEND_DISPATCHED  = "backend_dispatched"
    AWAITING_BACKEND    = "awaiting_backend"
    BACKEND_RESOLVED    = "backend_resolved"
    MUTATION_APPLIED    = "mutation_applied"
    CUSTOMER_NOTIFIED   = "customer_notified"
    CANNOT_COMPLETE     = "cannot_complete"
    ESCALATED           = "escalated"
    AWAITING_MANUAL     = "awaiting_manual"
    REJECTED            = "rejected"


class WorkflowStatus(str, Enum):
    PROCESSING         = "processing"
    PENDING_APPROVAL   = "pending_approval"
    AWAITING_WAREHOUSE = "awaiting_warehouse"
    AWAITING_MANUAL    = "awaiting_manual"
    CANCELED           = "canceled"
    CANNOT_CANCEL      = "cannot_cancel"
    UPDATED            = "updated"
    CANNOT_CHANGE      = "cannot_change"
    ESCALATED          = "escalated"
    REJECTED           = "rejected"


# awaiting_manual is handed to a human; automation never touches it again.
TERMINAL_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.CANCELED,
    WorkflowStatus.CANNOT_CANCEL,
    WorkflowStatus.UPDATED,
    WorkflowStatus.CANNOT_CHANGE,
    WorkflowStatus.ESCALATED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.AWAITING_MANUAL,
})


def success_status(kind: RequestKind) -> WorkflowStatus:
    if kind is RequestKind.CANCELLATION:
        return WorkflowStatus.CANCELED
    return WorkflowStatus.UPDATED


def failure_status(kind: RequestKind) -> WorkflowStatus:
    if kind is RequestKind.CANCELLATION:
        return WorkflowStatus.CANNOT_CANCEL
    return WorkflowStatus.CANNOT_CHANGE


class ApprovalStatus(str, Enum):
    PENDING  = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ── Inbound ─────────────────────────────────────────────────────────────────

class CustomerRequest(BaseModel):
    """One inbound customer email, as handed over by the mailbox sync."""
    user_id: str
    email_id: str
    customer_email: str
    subject: str = ""
    body: str = ""

    @property
    def text(self) -> str:
        return f"{self.subject}\n{self.body}"


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Category
    confidence: int = Field(ge=0, le=100)
    priority: Priority
    reasoning: str
    sources: tuple[str, ...] = ()
    grounded: bool = False


# ── Orders ──────────────────────────────────────────────────────────────────

class Address(BaseModel):
    name: str = ""
    line1: str
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""

    def lines(self) -> list[str]:
        locality = " ".join(p for p in (f"{self.city}," if self.city else "", self.state, self.postal_code) if p)
        return [line for line in (self.name, self.line1, self.line2, locality, self.country) if line]


class OrderData(BaseModel):
    id: str
    number: str
    status: str
    created_at: datetime | None = None
    customer_email: str
    customer_name: str = ""
    total: float = 0.0
    shipping_address: Address | None = None
    platform: str = "woocommerce"


class EligibilityResult(BaseModel):
    is_eligible: bool
    reason: str
    order_created_at: datetime | None = None
    store_timezone: str = "UTC"
    # False when the rule could not be applied with confidence (missing or
    # future timestamp); such requests always go to human review.
    certain: bool = True


# ── Workflow ────────────────────────────────────────────────────────────────

class BackendCorrelation(BaseModel):
    warehouse_thread: str | None = None
    shipbob_order_id: str | None = None
    shipstation_order_id: str | None = None
    shipstation_shipment_ids: list[str] = Field(default_factory=list)


class Workflow(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    email_id: str
    kind: RequestKind
    order_number: str
    customer_email: str
    fulfillment_method: FulfillmentMethod
    # Snapshot of the system-wide flag at creation.
    approval_required: bool = False
    status: WorkflowStatus = WorkflowStatus.PROCESSING
    step: WorkflowStep = WorkflowStep.INTAKE

    order: OrderData
    new_address: Address | None = None
    eligibility: EligibilityResult | None = None
    correlation: BackendCorrelation = Field(default_factory=BackendCorrelation)

    approval_id: str | None = None
    approved_customer_text: str | None = None

    customer_acknowledgment_sent: bool = False
    backend_request_sent: bool = False
    backend_reply_received: bool = False
    backend_reply: str | None = None
    was_mutation_successful: bool | None = None
    side_effect_applied: bool = False
    refund_id: str | None = None
    refund_amount: float | None = None
    final_notification_sent: bool = False
    escalation_reason: str | None = None

    timeout_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def refund_processed(self) -> bool:
        return self.kind is RequestKind.CANCELLATION and self.side_effect_applied

    @property
    def address_updated(self) -> bool:
        return self.kind is RequestKind.ADDRESS_CHANGE and self.side_effect_applied


class WorkflowEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    event_type: str
    description: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ── Human queues ────────────────────────────────────────────────────────────

class ApprovalItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    email_id: str
    customer_email: str
    workflow_id: str | None = None
    classification: Category
    proposed_customer_response: str
    confidence: int = Field(default=0, ge=0, le=100)
    status: ApprovalStatus = ApprovalStatus.PENDING
    # order_number, fulfillment_method, request_kind, eligibility, planned_actions
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: datetime | None = None
    reviewer: str | None = None


class EscalationRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    email_id: str | None = None
    workflow_id: str | None = None
    customer_email: str | None = None
    priority: Priority = Priority.MEDIUM
    reason: str
    status: str = "pending"
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
