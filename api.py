"""
FastAPI HTTP Interface
======================
Exposes the request automation engine over HTTP.

Endpoints:
  POST /emails                          → classify + route one inbound customer email
  POST /workflows/{id}/warehouse-reply  → feed a warehouse reply to a known workflow
  POST /replies                         → warehouse reply matched by order number
  POST /approvals/{id}/approve          → execute an approved item
  POST /approvals/{id}/reject           → reject it (workflow closes as "rejected")
  GET  /workflows/{id}                  → workflow snapshot + audit events
  GET  /approvals                       → approval queue (?user_id=&status=)
  GET  /escalations                     → escalation queue (?user_id=&workflow_id=)
  POST /timeouts/sweep                  → run one TimeoutMonitor sweep now
  GET  /health                          → liveness check

Run:
    uvicorn api:app --reload --port 8000

Settings are read from SUPPORT_* env vars on every request (see
support_engine.config), so flipping SUPPORT_APPROVAL_REQUIRED takes effect
for the next email without a restart. Workflows already created keep the
approval flag they started with.

Example cURL flow:

    # 1. Inbound email
    curl -X POST http://localhost:8000/emails \\
         -H "Content-Type: application/json" \\
         -d '{"user_id": "seller-1", "email_id": "m-1", "customer_email": "ana@example.com",
              "subject": "Cancel order #1001", "body": "Please cancel my order #1001"}'

    # 2. Warehouse answers
    curl -X POST http://localhost:8000/workflows/<id>/warehouse-reply \\
         -H "Content-Type: application/json" -d '{"text": "Canceled"}'
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from support_engine import InboundRouter, TimeoutMonitor, WorkflowEngine, open_store, settings_from_env
from support_engine.classifier import EmailClassifier
from support_engine.commerce import InMemoryOrderSource, WooCommerceStore
from support_engine.errors import (
    ApprovalNotFound,
    ApprovalStateError,
    AutomationError,
    ConfigurationError,
    WorkflowNotFound,
)
from support_engine.grounding import GroundedResponder
from support_engine.knowledge import NullKnowledgeGateway
from support_engine.mail import LoggingTransport, Mailer
from support_engine.models import ApprovalItem, ApprovalStatus, CustomerRequest, EscalationRecord, Workflow, WorkflowEvent
from support_engine.providers import build_llm, configure_dspy
from support_engine.safety import ContentSafetyCheck

logger = logging.getLogger(__name__)

_engine: WorkflowEngine | None  = None
_router: InboundRouter | None   = None
_monitor: TimeoutMonitor | None = None


def _order_source(client: httpx.AsyncClient):
    """WooCommerce when configured, otherwise an empty in-memory source."""
    settings = settings_from_env()
    if settings.woocommerce_url and settings.woocommerce_consumer_key and settings.woocommerce_consumer_secret:
        return WooCommerceStore(
            settings.woocommerce_url,
            settings.woocommerce_consumer_key,
            settings.woocommerce_consumer_secret,
            client=client,
        )
    logger.warning("[api] WooCommerce not configured; using an empty in-memory order source")
    return InMemoryOrderSource()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the SQLite store, wire the engine and router, and start the timeout
    monitor. Everything is closed again on shutdown.

    The SQLite path is read from SUPPORT_DB_PATH (default "support_engine.db").
    Workflows parked for a warehouse reply survive restarts.
    """
    global _engine, _router, _monitor
    configure_dspy()

    async with open_store() as store, httpx.AsyncClient() as client:
        # The mail provider is an external collaborator; plug its transport in here.
        mailer  = Mailer(LoggingTransport(), ContentSafetyCheck())
        _engine = WorkflowEngine(store, mailer, _order_source(client), http_client=client)
        _router = InboundRouter(
            _engine,
            NullKnowledgeGateway(),
            EmailClassifier(),
            GroundedResponder(NullKnowledgeGateway(), build_llm()),
        )
        _monitor = TimeoutMonitor(store, _engine.escalations)

        stop = asyncio.Event()
        task = asyncio.create_task(_monitor.run(float(os.getenv("SUPPORT_SWEEP_INTERVAL", "300")), stop))
        try:
            yield
        finally:
            stop.set()
            await task
            _engine = _router = _monitor = None


app = FastAPI(
    title="Request Automation Engine",
    description="Customer-service email automation with human approval and fulfillment backends.",
    lifespan=lifespan,
)


# ── Request / Response models ──────────────────────────────────────────────────

class ReplyRequest(BaseModel):
    text: str


class CorrelatedReplyRequest(BaseModel):
    user_id: str
    subject: str = ""
    body: str


class DecisionRequest(BaseModel):
    reviewer: str | None = None


class WorkflowResponse(BaseModel):
    workflow: Workflow
    events: list[WorkflowEvent]


# ── Helpers ────────────────────────────────────────────────────────────────────

def _require_ready() -> tuple[WorkflowEngine, InboundRouter]:
    if not _engine or not _router:
        raise HTTPException(status_code=503, detail="Engine not initialized.")
    return _engine, _router


def _settings():
    try:
        return settings_from_env()
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _http_error(exc: AutomationError) -> HTTPException:
    if isinstance(exc, (WorkflowNotFound, ApprovalNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ApprovalStateError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.post("/emails")
async def receive_email(request: CustomerRequest):
    """
    Route one inbound email. Never fails for business reasons: the outcome
    says whether it became a workflow, an auto-reply, a review item or an
    escalation.
    """
    _, router = _require_ready()
    outcome = await router.process_email(request, _settings())
    return outcome.model_dump(mode="json")


@app.post("/workflows/{workflow_id}/warehouse-reply", response_model=Workflow)
async def warehouse_reply(workflow_id: str, reply: ReplyRequest):
    engine, _ = _require_ready()
    try:
        return await engine.handle_warehouse_reply(workflow_id, reply.text, _settings())
    except AutomationError as exc:
        raise _http_error(exc) from exc


@app.post("/replies", response_model=Workflow | None)
async def correlated_reply(reply: CorrelatedReplyRequest):
    """Warehouse reply without a workflow id; null when nothing matched."""
    engine, _ = _require_ready()
    return await engine.correlate_reply(reply.user_id, reply.subject, reply.body, _settings())


@app.post("/approvals/{approval_id}/approve")
async def approve(approval_id: str, decision: DecisionRequest):
    _, router = _require_ready()
    try:
        outcome = await router.approve(approval_id, _settings(), decision.reviewer)
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return outcome.model_dump(mode="json")


@app.post("/approvals/{approval_id}/reject", response_model=ApprovalItem)
async def reject(approval_id: str, decision: DecisionRequest):
    _, router = _require_ready()
    try:
        return await router.reject(approval_id, decision.reviewer)
    except AutomationError as exc:
        raise _http_error(exc) from exc


@app.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: str):
    engine, _ = _require_ready()
    try:
        workflow = await engine.get_workflow(workflow_id)
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return WorkflowResponse(workflow=workflow, events=await engine.get_events(workflow_id))


@app.get("/approvals", response_model=list[ApprovalItem])
async def list_approvals(user_id: str | None = None, status: ApprovalStatus | None = None):
    engine, _ = _require_ready()
    return await engine.store.list_approvals(user_id, status)


@app.get("/escalations", response_model=list[EscalationRecord])
async def list_escalations(user_id: str | None = None, workflow_id: str | None = None):
    engine, _ = _require_ready()
    return await engine.store.list_escalations(user_id, workflow_id)


@app.post("/timeouts/sweep", response_model=list[Workflow])
async def sweep_timeouts():
    _require_ready()
    return await _monitor.sweep()


@app.get("/health")
async def health():
    return {"status": "ok", "engine_ready": _engine is not None}
