"""
Workflow State
==============
The TypedDict that flows through every node of the workflow graph, plus the
collaborators bundle injected per invocation.

Durable truth lives in the Store: every node that changes the Workflow saves
it before returning. The graph state only carries what the next routing
decision needs, so a run can stop at any edge (awaiting a warehouse reply,
pending approval) and a later run can resume from the stored workflow alone.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Literal

from typing_extensions import TypedDict

from .adapters.base import BackendCheck, FulfillmentAdapter, MutationResult
from .approval import ApprovalQueue, EscalationQueue
from .commerce import OrderSource
from .config import EngineSettings
from .mail import Mailer
from .models import Workflow, utcnow
from .store import Store

Entry = Literal["intake", "approved", "reply"]


class WorkflowState(TypedDict, total=False):
    workflow: Workflow
    # Where this run enters the state machine.
    entry: Entry
    reply_text: str | None
    backend_check: BackendCheck | None
    mutation: MutationResult | None
    # "time_window" or "backend"; picks the rejection template.
    rejection: str | None
    # Set by any node that cannot continue; routes to the escalate node.
    escalation_reason: str | None


@dataclass
class WorkflowDeps:
    store: Store
    mailer: Mailer
    orders: OrderSource
    adapter: FulfillmentAdapter
    settings: EngineSettings
    approvals: ApprovalQueue
    escalations: EscalationQueue
    clock: Callable[[], datetime] = field(default=utcnow)
