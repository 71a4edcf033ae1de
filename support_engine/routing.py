"""
Routing Functions
=================
Pure functions that read WorkflowState and return a destination node name.
LangGraph calls these at conditional edges to decide where execution goes next.

Pure functions = easy to unit-test without spinning up the full graph.

Every router checks escalation_reason first: once a node has given up, the
only way forward is the escalate node.

Graph routing map:
  START             → route_entry              → check_eligibility | health_check | notify_ineligible | resolve_backend
  check_eligibility → route_after_eligibility  → request_approval | health_check | notify_ineligible | escalate
  request_approval  → route_after_approval     → END | escalate
  health_check      → route_after_health       → acknowledge | escalate
  acknowledge       → route_after_acknowledge  → dispatch_backend | escalate
  dispatch_backend  → route_after_dispatch     → apply_mutation | notify_outcome | notify_ineligible | END | escalate
  resolve_backend   → route_after_resolution   → apply_mutation | notify_outcome | escalate
  apply_mutation    → route_after_mutation     → notify_outcome | escalate
  notify_outcome / notify_ineligible → route_after_notify → END | escalate
"""
from typing import Literal

from langgraph.graph import END

from .approval import PLAN_PROCEED, plan_decision
from .models import WorkflowStep
from .state import WorkflowState


def route_entry(state: WorkflowState) -> Literal["check_eligibility", "health_check", "notify_ineligible", "resolve_backend"]:
    """
    intake   → run the full machine from the eligibility check
    approved → replay the frozen plan; eligibility is never re-derived
    reply    → an asynchronous backend answered
    """
    entry = state.get("entry", "intake")
    if entry == "reply":
        return "resolve_backend"
    if entry == "approved":
        eligibility = state["workflow"].eligibility
        if eligibility is not None and plan_decision(eligibility) == PLAN_PROCEED:
            return "health_check"
        return "notify_ineligible"
    return "check_eligibility"


def route_after_eligibility(state: WorkflowState) -> Literal["request_approval", "health_check", "notify_ineligible", "escalate"]:
    if state.get("escalation_reason"):
        return "escalate"

    workflow    = state["workflow"]
    eligibility = workflow.eligibility
    if eligibility is None:
        return "escalate"
    if workflow.approval_required or not eligibility.certain:
        return "request_approval"
    if eligibility.is_eligible:
        return "health_check"
    return "notify_ineligible"


def route_after_approval(state: WorkflowState) -> Literal["escalate", "__end__"]:
    """The run stops here; approval re-enters through execute_approved()."""
    if state.get("escalation_reason"):
        return "escalate"
    return END


def route_after_health(state: WorkflowState) -> Literal["acknowledge", "escalate"]:
    if state.get("escalation_reason"):
        return "escalate"
    return "acknowledge"


def route_after_acknowledge(state: WorkflowState) -> Literal["dispatch_backend", "escalate"]:
    if state.get("escalation_reason"):
        return "escalate"
    return "dispatch_backend"


def _after_resolution(state: WorkflowState) -> str:
    if state["workflow"].was_mutation_successful:
        return "apply_mutation"
    return "notify_outcome"


def route_after_dispatch(
    state: WorkflowState,
) -> Literal["apply_mutation", "notify_outcome", "notify_ineligible", "escalate", "__end__"]:
    """
    Backend said no              → notify_ineligible (backend rejection text)
    Parked (warehouse / manual)  → END; a reply, timeout or human resumes it
    Resolved synchronously       → apply_mutation on success, else notify_outcome
    """
    if state.get("escalation_reason"):
        return "escalate"
    if state.get("rejection") == "backend":
        return "notify_ineligible"

    step = state["workflow"].step
    if step in (WorkflowStep.AWAITING_BACKEND, WorkflowStep.AWAITING_MANUAL):
        return END
    return _after_resolution(state)


def route_after_resolution(state: WorkflowState) -> Literal["apply_mutation", "notify_outcome", "escalate"]:
    if state.get("escalation_reason"):
        return "escalate"
    return _after_resolution(state)


def route_after_mutation(state: WorkflowState) -> Literal["notify_outcome", "escalate"]:
    if state.get("escalation_reason"):
        return "escalate"
    return "notify_outcome"


def route_after_notify(state: WorkflowState) -> Literal["escalate", "__end__"]:
    if state.get("escalation_reason"):
        return "escalate"
    return END
