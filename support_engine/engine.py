"""
Workflow Engine
===============
High-level interface for cancellation and address-change workflows.

Responsibilities:
  - Intake: identify the order, validate it, extract the new address,
    suppress duplicates and enforce the per-customer velocity cap
  - Create the durable Workflow and run it through the compiled graph
  - Re-enter the graph for each later trigger:
      · execute_approved()       a human approved the frozen plan
      · reject_approval()        a human rejected it (terminal, no action)
      · handle_warehouse_reply() the warehouse answered by email
      · correlate_reply()        same, matched by order number only

Intake failures raise AutomationError subclasses before any Workflow exists,
so the caller escalates the raw email. Once a Workflow exists, nothing raises
past the engine: _run() escalates the workflow on any unexpected exception.

Settings are passed per call. The adapter is built from the workflow's own
fulfillment_method, never from the current settings, so a workflow keeps the
backend it was created with.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

import httpx

from .adapters import build_adapter
from .approval import ApprovalQueue, EscalationQueue
from .commerce import OrderSource, validate_order
from .config import EngineSettings
from .errors import (
    ApprovalStateError,
    DuplicateRequest,
    OrderNotIdentified,
    OrderValidationError,
    VelocityLimitExceeded,
    WorkflowNotFound,
)
from .extraction import OrderNumberExtractor, extract_address, extract_order_number_regex
from .graph import build_workflow_graph
from .mail import Mailer
from .models import (
    ApprovalItem,
    ApprovalStatus,
    CustomerRequest,
    OrderData,
    RequestKind,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from .nodes import escalate_workflow, record_event
from .state import Entry, WorkflowDeps, WorkflowState
from .store import Store

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    Drives one customer request at a time per workflow, many workflows at once.

    Args:
        store:           Durable Store (workflows, events, approvals, escalations).
        mailer:          Outbound mail with the customer-facing safety check.
        orders:          Business system (WooCommerce or in-memory).
        extractor:       Order-number extractor; regex + model by default.
        http_client:     Shared httpx client for the API-based adapters.
        adapter_factory: FulfillmentMethod → adapter; build_adapter by default.
        clock:           Returns the current UTC time; injected by tests.

    Usage:
        engine   = WorkflowEngine(store, mailer, orders)
        workflow = await engine.start_request(request, RequestKind.CANCELLATION, settings)
    """

    def __init__(
        self,
        store: Store,
        mailer: Mailer,
        orders: OrderSource,
        *,
        extractor: OrderNumberExtractor | None = None,
        http_client: httpx.AsyncClient | None = None,
        adapter_factory: Callable = build_adapter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store           = store
        self.mailer          = mailer
        self.orders          = orders
        self.extractor       = extractor or OrderNumberExtractor()
        self.http_client     = http_client or httpx.AsyncClient()
        self.adapter_factory = adapter_factory
        self.clock           = clock
        self.approvals       = ApprovalQueue(store)
        self.escalations     = EscalationQueue(store)
        self._graph          = build_workflow_graph()
        # (user_id, order number) -> [lock, holders + waiters]
        self._intake_locks: dict[tuple[str, str], list] = {}

    def _deps(self, workflow: Workflow, settings: EngineSettings) -> WorkflowDeps:
        adapter = self.adapter_factory(workflow.fulfillment_method, settings, self.mailer, self.http_client)
        return WorkflowDeps(
            store=self.store,
            mailer=self.mailer,
            orders=self.orders,
            adapter=adapter,
            settings=settings,
            approvals=self.approvals,
            escalations=self.escalations,
            clock=self.clock,
        )

    async def _run(self, workflow: Workflow, entry: Entry, settings: EngineSettings, reply_text: str | None = None) -> Workflow:
        """Invoke the graph once. Any exception escalates the workflow instead of propagating."""
        deps  = self._deps(workflow, settings)
        state: WorkflowState = {"workflow": workflow, "entry": entry, "reply_text": reply_text}
        try:
            result = await self._graph.ainvoke(state, config={"configurable": {"deps": deps}})
            return result["workflow"]
        except Exception as exc:
            logger.exception("[engine] workflow=%s failed during %s run", workflow.id, entry)
            current = await self.store.get_workflow(workflow.id) or workflow
            return await escalate_workflow(deps, current, f"Unexpected error: {exc}")

    # ── Intake ──────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _intake_lock(self, user_id: str, order_number: str):
        """Serialise the duplicate check and the insert for one seller's order."""
        key   = (user_id, order_number)
        entry = self._intake_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._intake_locks[key]

    async def identify_order(self, request: CustomerRequest) -> OrderData:
        """Explicit order number first, then the customer's most recent order."""
        number = await self.extractor.extract(request.subject, request.body)
        order  = None
        if number:
            order = await self.orders.find_order(number)
            if order is None:
                logger.info("[engine] Order #%s from email %s not found", number, request.email_id)
        if order is None:
            order = await self.orders.latest_order_for_email(request.customer_email)
        if order is None:
            raise OrderNotIdentified()
        return order

    async def _check_duplicates(self, order: OrderData, request: CustomerRequest, settings: EngineSettings) -> None:
        now    = self.clock()
        recent = await self.store.recent_workflows_for_order(
            request.user_id, order.number, request.customer_email, now - settings.duplicate_window
        )
        if recent:
            raise DuplicateRequest(
                f"A request for order #{order.number} was already received at {recent[0].created_at.isoformat()}"
            )
        count = await self.store.count_recent_for_email(request.user_id, request.customer_email, now - settings.velocity_window)
        if count >= settings.velocity_limit:
            raise VelocityLimitExceeded(
                f"{request.customer_email} made {count} requests in the last {settings.velocity_window}"
            )

    async def start_request(self, request: CustomerRequest, kind: RequestKind, settings: EngineSettings) -> Workflow:
        """
        Create a workflow for `request` and run it as far as it can go.

        Raises (before any workflow exists):
            ConfigurationError, OrderNotIdentified, OrderValidationError,
            DuplicateRequest, VelocityLimitExceeded, IntegrationUnavailable
        """
        settings.require_backend_config()

        order = await self.identify_order(request)
        validate_order(order, request.customer_email, kind, self.clock(), settings.max_order_age)

        new_address = None
        if kind is RequestKind.ADDRESS_CHANGE:
            new_address = extract_address(request.body) or extract_address(request.text)
            if new_address is None:
                raise OrderValidationError("Could not find a new shipping address in the email")

        async with self._intake_lock(request.user_id, order.number):
            await self._check_duplicates(order, request, settings)
            workflow = await self.store.create_workflow(Workflow(
                user_id=request.user_id,
                email_id=request.email_id,
                kind=kind,
                order_number=order.number,
                customer_email=request.customer_email,
                fulfillment_method=settings.fulfillment_method,
                approval_required=settings.approval_required,
                order=order,
                new_address=new_address,
                created_at=self.clock(),
            ))

        await self.store.append_event(WorkflowEvent(
            workflow_id=workflow.id,
            event_type="workflow_created",
            description=f"{kind.value} request for order #{order.number}",
            metadata={"fulfillment_method": workflow.fulfillment_method.value, "email_id": request.email_id},
            created_at=self.clock(),
        ))
        logger.info(
            "[engine] workflow=%s created kind=%s order=#%s backend=%s",
            workflow.id, kind.value, order.number, workflow.fulfillment_method.value,
        )
        return await self._run(workflow, "intake", settings)

    # ── Approvals ───────────────────────────────────────────────────────────

    async def _pending_workflow(self, approval_id: str) -> tuple[ApprovalItem, Workflow]:
        item = await self.approvals.get(approval_id)
        if item.status is not ApprovalStatus.PENDING:
            raise ApprovalStateError(f"Approval item {approval_id} is already {item.status.value}")
        if item.workflow_id is None:
            raise ApprovalStateError(f"Approval item {approval_id} has no workflow")
        workflow = await self.store.require_workflow(item.workflow_id)
        if workflow.status is not WorkflowStatus.PENDING_APPROVAL:
            raise ApprovalStateError(f"Workflow {workflow.id} is {workflow.status.value}, not pending approval")
        return item, workflow

    async def execute_approved(self, approval_id: str, settings: EngineSettings, reviewer: str | None = None) -> Workflow:
        """
        Approve and execute the frozen plan. Eligibility is not re-derived and
        the email is not re-classified: the stored snapshot decides the path.

        The workflow is claimed before the item is marked approved, so an
        approved item always has a workflow that ran or was escalated.
        """
        item, workflow = await self._pending_workflow(approval_id)

        claimed = await self.store.claim_workflow(
            workflow,
            status=WorkflowStatus.PROCESSING,
            approved_customer_text=item.proposed_customer_response,
        )
        if claimed is None:
            raise ApprovalStateError(f"Workflow {workflow.id} changed while being approved")

        deps = self._deps(claimed, settings)
        try:
            await self.approvals.decide(approval_id, approve=True, reviewer=reviewer)
        except ApprovalStateError as exc:
            logger.error("[engine] workflow=%s claimed but approval %s not recorded: %s", claimed.id, approval_id, exc)
            return await escalate_workflow(deps, claimed, f"Approval {approval_id} could not be recorded: {exc}")

        await record_event(deps, claimed, "approval_granted", f"Approved by {reviewer or 'unknown'}", approval_id=approval_id)
        return await self._run(claimed, "approved", settings)

    async def reject_approval(self, approval_id: str, reviewer: str | None = None) -> Workflow:
        """Close the workflow as rejected. No customer email, no backend call."""
        _, workflow = await self._pending_workflow(approval_id)

        now     = self.clock()
        claimed = await self.store.claim_workflow(
            workflow,
            status=WorkflowStatus.REJECTED,
            step=WorkflowStep.REJECTED,
            completed_at=now,
        )
        if claimed is None:
            raise ApprovalStateError(f"Workflow {workflow.id} changed while being rejected")

        await self.approvals.decide(approval_id, approve=False, reviewer=reviewer)

        await self.store.append_event(WorkflowEvent(
            workflow_id=claimed.id,
            event_type="approval_rejected",
            description=f"Rejected by {reviewer or 'unknown'}",
            metadata={"approval_id": approval_id},
            created_at=now,
        ))
        logger.info("[engine] workflow=%s rejected by reviewer", claimed.id)
        return claimed

    # ── Backend replies ─────────────────────────────────────────────────────

    async def handle_warehouse_reply(self, workflow_id: str, reply_text: str, settings: EngineSettings) -> Workflow:
        """
        Feed a free-text warehouse reply into the state machine.

        Replays against a terminal workflow are recorded and ignored, so the
        refund and the final email happen at most once.
        """
        workflow = await self.store.require_workflow(workflow_id)
        deps     = self._deps(workflow, settings)

        if workflow.is_terminal:
            await record_event(deps, workflow, "duplicate_reply_ignored", "Reply received after completion", reply=reply_text[:200])
            logger.info("[engine] workflow=%s reply ignored, already %s", workflow.id, workflow.status.value)
            return workflow

        if workflow.status is not WorkflowStatus.AWAITING_WAREHOUSE:
            await record_event(deps, workflow, "unexpected_reply", f"Reply received while {workflow.status.value}", reply=reply_text[:200])
            return workflow

        claimed = await self.store.claim_workflow(
            workflow,
            status=WorkflowStatus.PROCESSING,
            step=WorkflowStep.BACKEND_RESOLVED,
            backend_reply=reply_text,
            timeout_at=None,
        )
        if claimed is None:
            # The timeout sweep or a concurrent reply got there first.
            return await self.store.require_workflow(workflow_id)

        return await self._run(claimed, "reply", settings, reply_text=reply_text)

    async def correlate_reply(self, user_id: str, subject: str, body: str, settings: EngineSettings) -> Workflow | None:
        """Match a reply to the single workflow awaiting the warehouse for its order number."""
        number = extract_order_number_regex(f"{subject}\n{body}")
        if number is None:
            logger.info("[engine] Reply without order number could not be correlated")
            return None

        waiting = await self.store.awaiting_workflows_for_order(number, user_id)
        if len(waiting) != 1:
            logger.warning("[engine] Reply for order #%s matched %d awaiting workflows", number, len(waiting))
            return None
        return await self.handle_warehouse_reply(waiting[0].id, body, settings)

    # ── Queries ─────────────────────────────────────────────────────────────

    async def get_workflow(self, workflow_id: str) -> Workflow:
        return await self.store.require_workflow(workflow_id)

    async def get_events(self, workflow_id: str) -> list[WorkflowEvent]:
        if await self.store.get_workflow(workflow_id) is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return await self.store.list_events(workflow_id)

    async def active_workflows(self, user_id: str) -> list[Workflow]:
        return await self.store.active_workflows(user_id)

    async def aclose(self) -> None:
        await self.http_client.aclose()
