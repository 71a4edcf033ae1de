"""
Graph Nodes
===========
Each function here is one node in the workflow StateGraph.

Node responsibilities:
  check_eligibility  apply the time-window policy, snapshot the result
  request_approval   persist the frozen plan; the run stops until a human decides
  health_check       fail fast on a dead integration before anything is sent
  acknowledge        "we're on it" email (the approved draft when there is one)
  dispatch_backend   backend eligibility check + mutation attempt
  resolve_backend    interpret an asynchronous backend reply
  apply_mutation     refund / address write-back, after the approval invariant
  notify_ineligible  "cannot proceed" email (time window or backend said no)
  notify_outcome     final success/failure email, exactly once
  escalate           terminal escalation + escalation record

Design principle: nodes are state transformers with one side effect each.
They read WorkflowState, persist the Workflow (plus an audit event) before
returning, and never decide where execution goes next; routing.py does.
Failures never raise out of a node: they come back as escalation_reason.
"""
import logging

from langchain_core.runnables import RunnableConfig

from . import templates
from .adapters.base import ChangeRequest
from .adapters.warehouse import parse_warehouse_reply
from .approval import plan_approval
from .eligibility import evaluate_eligibility
from .errors import DeliveryFailed, SafetyRejected, WorkflowTerminal
from .models import (
    ApprovalStatus,
    EscalationRecord,
    Priority,
    RequestKind,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
    failure_status,
    success_status,
)
from .state import WorkflowDeps, WorkflowState

logger = logging.getLogger(__name__)


def _deps(config: RunnableConfig) -> WorkflowDeps:
    return config["configurable"]["deps"]


async def record_event(deps: WorkflowDeps, workflow: Workflow, event_type: str, description: str, **metadata) -> None:
    await deps.store.append_event(WorkflowEvent(
        workflow_id=workflow.id,
        event_type=event_type,
        description=description,
        metadata=metadata,
        created_at=deps.clock(),
    ))


async def transition(
    deps: WorkflowDeps,
    workflow: Workflow,
    event_type: str,
    description: str,
    event_metadata: dict | None = None,
    **updates,
) -> Workflow:
    """Apply `updates`, persist, and append the matching audit event."""
    saved = await deps.store.save_workflow(workflow.model_copy(update=updates))
    await record_event(deps, saved, event_type, description, **(event_metadata or {}))
    logger.info("[engine] workflow=%s %s step=%s status=%s", saved.id, event_type, saved.step.value, saved.status.value)
    return saved


async def send_customer(deps: WorkflowDeps, workflow: Workflow, subject: str, text: str, purpose: str) -> str | None:
    """Send a customer email. Returns an escalation reason on failure, None on success."""
    try:
        await deps.mailer.send_customer(workflow.user_id, workflow.customer_email, subject, text)
    except SafetyRejected as exc:
        await record_event(deps, workflow, "safety_rejected", f"{purpose} not sent", reason=str(exc))
        return f"{purpose} blocked by content safety check: {exc}"
    except DeliveryFailed as exc:
        await record_event(deps, workflow, "delivery_failed", f"{purpose} not sent", reason=str(exc))
        return f"{purpose} could not be delivered: {exc}"
    return None


async def escalate_workflow(
    deps: WorkflowDeps,
    workflow: Workflow,
    reason: str,
    priority: Priority = Priority.HIGH,
) -> Workflow:
    """
    Move a workflow to the terminal escalated state and write the escalation
    record. A workflow that is already terminal is returned untouched.
    """
    current = await deps.store.get_workflow(workflow.id) or workflow
    if current.is_terminal:
        return current

    try:
        escalated = await transition(
            deps, current, "escalated", reason,
            status=WorkflowStatus.ESCALATED,
            step=WorkflowStep.ESCALATED,
            escalation_reason=reason,
            timeout_at=None,
            completed_at=deps.clock(),
        )
    except WorkflowTerminal:
        return await deps.store.get_workflow(workflow.id) or current

    logger.warning("[engine] workflow=%s escalated: %s", escalated.id, reason)
    await deps.escalations.escalate(EscalationRecord(
        user_id=escalated.user_id,
        email_id=escalated.email_id,
        workflow_id=escalated.id,
        customer_email=escalated.customer_email,
        priority=priority,
        reason=reason,
        metadata={
            "order_number":       escalated.order_number,
            "fulfillment_method": escalated.fulfillment_method.value,
            "request_kind":       escalated.kind.value,
            "last_step":          current.step.value,
        },
        created_at=deps.clock(),
    ))
    return escalated


# ── Nodes ───────────────────────────────────────────────────────────────────

async def check_eligibility_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    result = evaluate_eligibility(wf.order.created_at, deps.clock(), deps.settings.store_timezone)
    wf = await transition(
        deps, wf, "eligibility_checked", result.reason,
        {"is_eligible": result.is_eligible, "certain": result.certain},
        eligibility=result,
        step=WorkflowStep.ELIGIBILITY_CHECKED,
    )
    return {"workflow": wf, "rejection": None if result.is_eligible else "time_window"}


async def request_approval_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    item   = plan_approval(wf, wf.eligibility, deps.settings, created_at=deps.clock())
    stored = await deps.approvals.submit(item)
    if stored is None:
        return {"workflow": wf, "escalation_reason": "Approval item could not be persisted"}

    wf = await transition(
        deps, wf, "approval_requested", "Waiting for human approval of the planned actions",
        {"approval_id": stored.id, "plan": item.metadata["plan"]},
        status=WorkflowStatus.PENDING_APPROVAL,
        step=WorkflowStep.PENDING_APPROVAL,
        approval_id=stored.id,
    )
    return {"workflow": wf}


async def health_check_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    health = await deps.adapter.health_check(wf.user_id)
    if not health.healthy:
        await record_event(deps, wf, "integration_unavailable", health.reason, backend=wf.fulfillment_method.value)
        return {"workflow": wf, "escalation_reason": f"Service temporarily unavailable: {health.reason}"}
    return {"workflow": wf}


async def acknowledge_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    if wf.customer_acknowledgment_sent:
        return {"workflow": wf}

    default = templates.acknowledgment(wf.kind, wf.order_number)
    failure = await send_customer(deps, wf, default.subject, wf.approved_customer_text or default.text, "Customer acknowledgment")
    if failure:
        return {"workflow": wf, "escalation_reason": failure}

    wf = await transition(
        deps, wf, "customer_acknowledged", "Acknowledgment sent to customer",
        customer_acknowledgment_sent=True,
        step=WorkflowStep.ACKNOWLEDGING,
    )
    return {"workflow": wf}


async def dispatch_backend_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps    = _deps(config)
    wf      = state["workflow"]
    adapter = deps.adapter
    backend = wf.fulfillment_method.value

    check = await adapter.check_eligibility(wf.order, wf.kind)
    if check.error:
        await record_event(deps, wf, "backend_check_failed", check.reason, backend=backend)
        return {"workflow": wf, "backend_check": check, "escalation_reason": f"Backend eligibility check failed: {check.reason}"}

    if not check.eligible:
        wf = await transition(
            deps, wf, "backend_ineligible", check.reason, {"backend": backend},
            step=WorkflowStep.BACKEND_DISPATCHED,
        )
        return {"workflow": wf, "backend_check": check, "rejection": "backend"}

    handle = check.handle or adapter.default_handle(wf.order)
    result = await adapter.attempt_mutation(handle, ChangeRequest(
        user_id=wf.user_id,
        workflow_id=wf.id,
        kind=wf.kind,
        order=wf.order,
        new_address=wf.new_address,
    ))
    correlation = wf.correlation.model_copy(update=result.correlation)

    if result.error:
        wf = await transition(
            deps, wf, "backend_request_failed", result.message, {"backend": backend},
            correlation=correlation,
            step=WorkflowStep.BACKEND_DISPATCHED,
        )
        return {"workflow": wf, "mutation": result, "escalation_reason": f"Backend request failed: {result.message}"}

    wf = await transition(
        deps, wf, "backend_dispatched", result.message, {"backend": backend},
        correlation=correlation,
        backend_request_sent=True,
        step=WorkflowStep.BACKEND_DISPATCHED,
    )

    if result.pending:
        deadline = deps.clock() + deps.settings.warehouse_reply_timeout
        wf = await transition(
            deps, wf, "awaiting_backend", f"Waiting for backend reply until {deadline.isoformat()}",
            status=WorkflowStatus.AWAITING_WAREHOUSE,
            step=WorkflowStep.AWAITING_BACKEND,
            timeout_at=deadline,
        )
        return {"workflow": wf, "backend_check": check, "mutation": result}

    if result.manual:
        wf = await transition(
            deps, wf, "awaiting_manual", result.message,
            status=WorkflowStatus.AWAITING_MANUAL,
            step=WorkflowStep.AWAITING_MANUAL,
        )
        await deps.escalations.escalate(EscalationRecord(
            user_id=wf.user_id,
            email_id=wf.email_id,
            workflow_id=wf.id,
            customer_email=wf.customer_email,
            priority=Priority.MEDIUM,
            reason=f"Manual fulfillment action required: {result.message}",
            metadata={"order_number": wf.order_number, "request_kind": wf.kind.value, "backend": backend},
            created_at=deps.clock(),
        ))
        return {"workflow": wf, "backend_check": check, "mutation": result}

    wf = await transition(
        deps, wf, "backend_resolved", result.message, {"success": result.success},
        backend_reply_received=True,
        backend_reply=result.message,
        was_mutation_successful=result.success,
        step=WorkflowStep.BACKEND_RESOLVED,
    )
    return {"workflow": wf, "backend_check": check, "mutation": result}


async def resolve_backend_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    text    = state.get("reply_text") or wf.backend_reply or ""
    success = parse_warehouse_reply(text, wf.kind)
    wf = await transition(
        deps, wf, "backend_reply_received", f"Warehouse replied: {text.strip()[:200]}", {"success": success},
        backend_reply_received=True,
        backend_reply=text,
        was_mutation_successful=success,
        step=WorkflowStep.BACKEND_RESOLVED,
    )
    return {"workflow": wf}


async def _approval_violation(deps: WorkflowDeps, wf: Workflow) -> str | None:
    if wf.approval_id is None:
        if wf.approval_required:
            return "Approval is required but the workflow has no approval item"
        return None
    item = await deps.store.get_approval(wf.approval_id)
    if item is None or item.status is not ApprovalStatus.APPROVED:
        return f"Approval {wf.approval_id} is not approved"
    return None


async def apply_mutation_node(state: WorkflowState, config: RunnableConfig) -> dict:
    """
    Business-system side effect: refund for cancellation, address write-back
    for address change. Must complete before the success email is sent.
    """
    deps = _deps(config)
    wf   = state["workflow"]

    violation = await _approval_violation(deps, wf)
    if violation:
        await record_event(deps, wf, "approval_invariant_violated", violation)
        return {"workflow": wf, "escalation_reason": violation}

    if wf.side_effect_applied:
        return {"workflow": wf}

    if wf.kind is RequestKind.CANCELLATION:
        result     = await deps.orders.cancel_and_refund(wf.order)
        event_type = "refund_processed"
    else:
        if wf.new_address is None:
            return {"workflow": wf, "escalation_reason": "No new address recorded for address change"}
        result     = await deps.orders.update_shipping_address(wf.order, wf.new_address)
        event_type = "address_updated"

    if not result.success:
        await record_event(deps, wf, "side_effect_failed", result.message)
        return {"workflow": wf, "escalation_reason": f"Backend change succeeded but store update failed: {result.message}"}

    wf = await transition(
        deps, wf, event_type, result.message,
        {"refund_id": result.refund_id, "amount": result.amount},
        side_effect_applied=True,
        refund_id=result.refund_id,
        refund_amount=result.amount,
        step=WorkflowStep.MUTATION_APPLIED,
    )
    return {"workflow": wf}


async def notify_ineligible_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    if wf.final_notification_sent:
        return {"workflow": wf}

    rejection = state.get("rejection") or "time_window"
    if rejection == "backend":
        message = templates.backend_rejection(wf.kind, wf.order_number)
        text    = message.text
        step    = WorkflowStep.CANNOT_COMPLETE
    else:
        message = templates.time_window_rejection(wf.kind, wf.order_number)
        # An approved plan to reject carries the reviewer-approved wording.
        text    = wf.approved_customer_text or message.text
        step    = WorkflowStep.INELIGIBLE_NOTIFIED

    failure = await send_customer(deps, wf, message.subject, text, "Cannot-proceed notification")
    if failure:
        return {"workflow": wf, "escalation_reason": failure}

    wf = await transition(
        deps, wf, "customer_notified", f"{rejection} rejection sent to customer", {"rejection": rejection},
        status=failure_status(wf.kind),
        step=step,
        was_mutation_successful=False,
        final_notification_sent=True,
        completed_at=deps.clock(),
    )
    return {"workflow": wf}


async def notify_outcome_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    wf   = state["workflow"]

    if wf.final_notification_sent:
        return {"workflow": wf}

    succeeded = bool(wf.was_mutation_successful and wf.side_effect_applied)
    if succeeded:
        message = templates.success(wf.kind, wf.order_number, wf.refund_amount, wf.new_address)
    else:
        message = templates.failure(wf.kind, wf.order_number)

    failure = await send_customer(deps, wf, message.subject, message.text, "Final notification")
    if failure:
        return {"workflow": wf, "escalation_reason": failure}

    wf = await transition(
        deps, wf, "customer_notified", "Final notification sent to customer", {"success": succeeded},
        status=success_status(wf.kind) if succeeded else failure_status(wf.kind),
        step=WorkflowStep.CUSTOMER_NOTIFIED if succeeded else WorkflowStep.CANNOT_COMPLETE,
        final_notification_sent=True,
        completed_at=deps.clock(),
    )
    return {"workflow": wf}


async def escalate_node(state: WorkflowState, config: RunnableConfig) -> dict:
    deps   = _deps(config)
    reason = state.get("escalation_reason") or "Workflow could not continue"
    wf     = await escalate_workflow(deps, state["workflow"], reason)
    return {"workflow": wf}
