"""
Graph Construction
==================
Assembles the workflow StateGraph from nodes, edges, and routing functions.

Architecture (same shape for cancellation and address change):

    START ─ route_entry
      │ intake                     │ approved (frozen plan)        │ reply
      ▼                            │                               ▼
    check_eligibility              │                          resolve_backend
      │ approval needed / uncertain → request_approval → END        │
      │ ineligible ─────────────────────────────► notify_ineligible │
      ▼                            ▼                                │
    health_check ◄─────────────────┘                                │
      ▼                                                             │
    acknowledge                                                     │
      ▼                                                             │
    dispatch_backend ── backend says no ──► notify_ineligible       │
      │ async (warehouse) / manual ──► END                          │
      │ resolved                                                    │
      ▼                                                             │
    apply_mutation ◄── success ─────────────────────────────────────┘
      ▼                      (failure goes straight to notify_outcome)
    notify_outcome ──► END

    Any node that gives up routes to `escalate` ──► END.

No checkpointer: long suspensions (warehouse replies, approvals) end the run.
The Workflow row in the Store is the durable state, and a new run re-enters
through route_entry. Nothing is held in memory across the wait.

Collaborators are injected per invocation:

    await graph.ainvoke(state, config={"configurable": {"deps": deps}})
"""
from langgraph.graph import END, START, StateGraph

from .nodes import (
    acknowledge_node,
    apply_mutation_node,
    check_eligibility_node,
    dispatch_backend_node,
    escalate_node,
    health_check_node,
    notify_ineligible_node,
    notify_outcome_node,
    request_approval_node,
    resolve_backend_node,
)
from .routing import (
    route_after_acknowledge,
    route_after_approval,
    route_after_dispatch,
    route_after_eligibility,
    route_after_health,
    route_after_mutation,
    route_after_notify,
    route_after_resolution,
    route_entry,
)
from .state import WorkflowState


def build_workflow_graph():
    """
    Build and compile the request workflow graph.

    Returns:
        A compiled graph ready for ainvoke(). It is stateless and can be
        shared by every workflow run in the process.
    """
    workflow = StateGraph(WorkflowState)

    workflow.add_node("check_eligibility", check_eligibility_node)
    workflow.add_node("request_approval",  request_approval_node)
    workflow.add_node("health_check",      health_check_node)
    workflow.add_node("acknowledge",       acknowledge_node)
    workflow.add_node("dispatch_backend",  dispatch_backend_node)
    workflow.add_node("resolve_backend",   resolve_backend_node)
    workflow.add_node("apply_mutation",    apply_mutation_node)
    workflow.add_node("notify_ineligible", notify_ineligible_node)
    workflow.add_node("notify_outcome",    notify_outcome_node)
    workflow.add_node("escalate",          escalate_node)

    workflow.add_conditional_edges(
        START,
        route_entry,
        {
            "check_eligibility": "check_eligibility",
            "health_check":      "health_check",
            "notify_ineligible": "notify_ineligible",
            "resolve_backend":   "resolve_backend",
        },
    )
    workflow.add_conditional_edges(
        "check_eligibility",
        route_after_eligibility,
        {
            "request_approval":  "request_approval",
            "health_check":      "health_check",
            "notify_ineligible": "notify_ineligible",
            "escalate":          "escalate",
        },
    )
    workflow.add_conditional_edges(
        "request_approval",
        route_after_approval,
        {"escalate": "escalate", END: END},
    )
    workflow.add_conditional_edges(
        "health_check",
        route_after_health,
        {"acknowledge": "acknowledge", "escalate": "escalate"},
    )
    workflow.add_conditional_edges(
        "acknowledge",
        route_after_acknowledge,
        {"dispatch_backend": "dispatch_backend", "escalate": "escalate"},
    )
    workflow.add_conditional_edges(
        "dispatch_backend",
        route_after_dispatch,
        {
            "apply_mutation":    "apply_mutation",
            "notify_outcome":    "notify_outcome",
            "notify_ineligible": "notify_ineligible",
            "escalate":          "escalate",
            END: END,
        },
    )
    workflow.add_conditional_edges(
        "resolve_backend",
        route_after_resolution,
        {"apply_mutation": "apply_mutation", "notify_outcome": "notify_outcome", "escalate": "escalate"},
    )
    workflow.add_conditional_edges(
        "apply_mutation",
        route_after_mutation,
        {"notify_outcome": "notify_outcome", "escalate": "escalate"},
    )
    workflow.add_conditional_edges("notify_outcome",    route_after_notify, {"escalate": "escalate", END: END})
    workflow.add_conditional_edges("notify_ineligible", route_after_notify, {"escalate": "escalate", END: END})
    workflow.add_edge("escalate", END)

    return workflow.compile()
