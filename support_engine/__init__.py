"""
support_engine: Request Automation Engine for e-commerce customer service
=========================================================================

Package layout:

    models.py         pydantic records (Workflow, ApprovalItem, ...) and enums
    errors.py         AutomationError taxonomy
    config.py         EngineSettings + settings_from_env()
    eligibility.py    time-window policy (24h + Friday-noon weekend grace)
    extraction.py     order number (regex → DSPy) and new-address parsing
    knowledge.py      KnowledgeGateway interface + static implementation
    classifier.py     EmailClassifier DSPy module (ClassifyEmail signature)
    confidence.py     ConfidenceGate thresholds and fallback texts
    prompts.py        grounded-response prompt templates
    grounding.py      GroundedResponder (LangChain chat model)
    safety.py         outbound content-safety DSPy check
    mail.py           Mailer + EmailTransport interface
    templates.py      customer and warehouse message texts
    commerce.py       OrderSource (WooCommerce / in-memory) + order validation
    adapters/         FulfillmentAdapter per backend (warehouse, ShipBob, ShipStation, self)
    store.py          aiosqlite Store for workflows, events, approvals, escalations
    approval.py       planned actions, ApprovalQueue, EscalationQueue
    state.py          WorkflowState TypedDict + injected WorkflowDeps
    nodes.py          LangGraph node functions
    routing.py        pure routing functions for conditional edges
    graph.py          build_workflow_graph(): assembles and compiles the StateGraph
    engine.py         WorkflowEngine: intake, approvals, replies, queries
    monitor.py        TimeoutMonitor for overdue warehouse replies
    inbound.py        InboundRouter: classify, gate, dispatch every email
    providers.py      LLM + DSPy provider detection and construction

Entry points for external callers:
"""
from .config import EngineSettings, settings_from_env
from .engine import WorkflowEngine
from .graph import build_workflow_graph
from .inbound import InboundRouter, RoutingOutcome
from .models import CustomerRequest, RequestKind, Workflow, WorkflowStatus
from .monitor import TimeoutMonitor
from .store import Store, open_store

__all__ = [
    "WorkflowEngine",
    "InboundRouter",
    "RoutingOutcome",
    "TimeoutMonitor",
    "EngineSettings",
    "settings_from_env",
    "build_workflow_graph",
    "CustomerRequest",
    "RequestKind",
    "Workflow",
    "WorkflowStatus",
    "Store",
    "open_store",
]
