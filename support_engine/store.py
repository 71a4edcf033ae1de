"""
Persistence
===========
Durable storage for workflows, their audit events, approval items and
escalation records, on SQLite through aiosqlite.

Each record is stored as its pydantic JSON in a `data` column, next to the
few columns the engine queries on (status, step, order number, email,
timestamps as epoch seconds). That keeps the schema small while still serving:

  - "recent workflows for this customer/order"  (duplicate + velocity guards)
  - "workflows past their timeout"              (TimeoutMonitor sweep)
  - "the workflow awaiting a reply for order N" (reply correlation)

Concurrency:
  save_workflow() refuses to overwrite a terminal workflow (WorkflowTerminal).
  claim_workflow() is a compare-and-set on (status, step): it only succeeds if
  nobody moved the workflow since it was read. The reply handler and the
  timeout sweep both claim before acting, so at most one of them wins.
  decide_approval() is the same compare-and-set on pending → approved/rejected.

The DB file path is controlled by the SUPPORT_DB_PATH env var, defaulting to
"support_engine.db" in the current working directory. ":memory:" is used by
tests.

Usage:

    async with open_store() as store:
        engine = WorkflowEngine(store, ...)
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

import aiosqlite

from .errors import WorkflowNotFound, WorkflowTerminal
from .models import (
    TERMINAL_STATUSES,
    ApprovalItem,
    ApprovalStatus,
    EscalationRecord,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "support_engine.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    order_number    TEXT NOT NULL,
    customer_email  TEXT NOT NULL,
    kind            TEXT NOT NULL,
    status          TEXT NOT NULL,
    step            TEXT NOT NULL,
    created_at      REAL NOT NULL,
    timeout_at      REAL,
    data            TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_workflows_email   ON workflows (customer_email, created_at);
CREATE INDEX IF NOT EXISTS ix_workflows_order   ON workflows (order_number, status);
CREATE INDEX IF NOT EXISTS ix_workflows_timeout ON workflows (status, timeout_at);

CREATE TABLE IF NOT EXISTS workflow_events (
    id           TEXT PRIMARY KEY,
    workflow_id  TEXT NOT NULL,
    event_type   TEXT NOT NULL,
    created_at   REAL NOT NULL,
    data         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_events_workflow ON workflow_events (workflow_id, created_at);

CREATE TABLE IF NOT EXISTS approvals (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL,
    workflow_id  TEXT,
    status       TEXT NOT NULL,
    created_at   REAL NOT NULL,
    data         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS escalations (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL,
    workflow_id  TEXT,
    status       TEXT NOT NULL,
    created_at   REAL NOT NULL,
    data         TEXT NOT NULL
);
"""

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)
_TERMINAL_SQL    = ", ".join("?" for _ in _TERMINAL_VALUES)


def get_db_path() -> str:
    """
    Return the SQLite database file path.

    Resolution order:
      1. SUPPORT_DB_PATH environment variable
      2. DEFAULT_DB_PATH ("support_engine.db" in the cwd)
    """
    return os.getenv("SUPPORT_DB_PATH", DEFAULT_DB_PATH)


def _ts(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class Store:
    def __init__(self, db_path: str | None = None):
        self.db_path = db_path if db_path is not None else get_db_path()
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> "Store":
        logger.info("[store] Opening SQLite store at: %s", self.db_path)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store is not open")
        return self._db

    async def _fetch_models(self, model, sql: str, params: tuple = ()) -> list:
        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [model.model_validate_json(row[0]) for row in rows]

    # ── Workflows ───────────────────────────────────────────────────────────

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await self.db.execute(
            "INSERT INTO workflows (id, user_id, order_number, customer_email, kind, status, step,"
            " created_at, timeout_at, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                workflow.id, workflow.user_id, workflow.order_number,
                workflow.customer_email.lower(), workflow.kind.value,
                workflow.status.value, workflow.step.value,
                _ts(workflow.created_at), _ts(workflow.timeout_at),
                workflow.model_dump_json(),
            ),
        )
        await self.db.commit()
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        found = await self._fetch_models(Workflow, "SELECT data FROM workflows WHERE id = ?", (workflow_id,))
        return found[0] if found else None

    async def require_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return workflow

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Persist `workflow`. Raises WorkflowTerminal if the stored row is already terminal."""
        workflow = workflow.model_copy(update={"updated_at": utcnow()})
        cursor = await self.db.execute(
            "UPDATE workflows SET status = ?, step = ?, timeout_at = ?, data = ?"
            f" WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})",
            (
                workflow.status.value, workflow.step.value, _ts(workflow.timeout_at),
                workflow.model_dump_json(), workflow.id, *_TERMINAL_VALUES,
            ),
        )
        await self.db.commit()
        if cursor.rowcount == 0:
            await self._raise_unwritable(workflow.id)
        return workflow

    async def claim_workflow(self, current: Workflow, **updates) -> Workflow | None:
        """
        Compare-and-set: apply `updates` only if the stored (status, step) still
        equal current's. Returns the new workflow, or None if someone else moved it.
        """
        updated = current.model_copy(update={**updates, "updated_at": utcnow()})
        cursor = await self.db.execute(
            "UPDATE workflows SET status = ?, step = ?, timeout_at = ?, data = ?"
            f" WHERE id = ? AND status = ? AND step = ? AND status NOT IN ({_TERMINAL_SQL})",
            (
                updated.status.value, updated.step.value, _ts(updated.timeout_at),
                updated.model_dump_json(), current.id,
                current.status.value, current.step.value, *_TERMINAL_VALUES,
            ),
        )
        await self.db.commit()
        return updated if cursor.rowcount == 1 else None

    async def _raise_unwritable(self, workflow_id: str) -> None:
        stored = await self.get_workflow(workflow_id)
        if stored is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        raise WorkflowTerminal(f"Workflow {workflow_id} is already {stored.status.value}")

    async def recent_workflows_for_order(
        self, user_id: str, order_number: str, customer_email: str, since: datetime
    ) -> list[Workflow]:
        return await self._fetch_models(
            Workflow,
            "SELECT data FROM workflows WHERE user_id = ? AND order_number = ? AND customer_email = ? AND created_at >= ?"
            " ORDER BY created_at DESC",
            (user_id, order_number, customer_email.lower(), _ts(since)),
        )

    async def count_recent_for_email(self, user_id: str, customer_email: str, since: datetime) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM workflows WHERE user_id = ? AND customer_email = ? AND created_at >= ?",
            (user_id, customer_email.lower(), _ts(since)),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    async def workflows_past_timeout(self, now: datetime) -> list[Workflow]:
        return await self._fetch_models(
            Workflow,
            "SELECT data FROM workflows WHERE status = ? AND timeout_at IS NOT NULL AND timeout_at <= ?"
            " ORDER BY timeout_at",
            (WorkflowStatus.AWAITING_WAREHOUSE.value, _ts(now)),
        )

    async def awaiting_workflows_for_order(self, order_number: str, user_id: str | None = None) -> list[Workflow]:
        sql    = "SELECT data FROM workflows WHERE order_number = ? AND status = ?"
        params: tuple = (order_number, WorkflowStatus.AWAITING_WAREHOUSE.value)
        if user_id is not None:
            sql    += " AND user_id = ?"
            params += (user_id,)
        return await self._fetch_models(Workflow, sql + " ORDER BY created_at DESC", params)

    async def active_workflows(self, user_id: str) -> list[Workflow]:
        return await self._fetch_models(
            Workflow,
            f"SELECT data FROM workflows WHERE user_id = ? AND status NOT IN ({_TERMINAL_SQL})"
            " ORDER BY created_at DESC",
            (user_id, *_TERMINAL_VALUES),
        )

    # ── Events ──────────────────────────────────────────────────────────────

    async def append_event(self, event: WorkflowEvent) -> WorkflowEvent:
        await self.db.execute(
            "INSERT INTO workflow_events (id, workflow_id, event_type, created_at, data) VALUES (?, ?, ?, ?, ?)",
            (event.id, event.workflow_id, event.event_type, _ts(event.created_at), event.model_dump_json()),
        )
        await self.db.commit()
        return event

    async def list_events(self, workflow_id: str) -> list[WorkflowEvent]:
        return await self._fetch_models(
            WorkflowEvent,
            "SELECT data FROM workflow_events WHERE workflow_id = ? ORDER BY created_at, rowid",
            (workflow_id,),
        )

    # ── Approvals ───────────────────────────────────────────────────────────

    async def create_approval(self, item: ApprovalItem) -> ApprovalItem:
        await self.db.execute(
            "INSERT INTO approvals (id, user_id, workflow_id, status, created_at, data) VALUES (?, ?, ?, ?, ?, ?)",
            (item.id, item.user_id, item.workflow_id, item.status.value, _ts(item.created_at), item.model_dump_json()),
        )
        await self.db.commit()
        return item

    async def get_approval(self, approval_id: str) -> ApprovalItem | None:
        found = await self._fetch_models(ApprovalItem, "SELECT data FROM approvals WHERE id = ?", (approval_id,))
        return found[0] if found else None

    async def decide_approval(
        self,
        item: ApprovalItem,
        status: ApprovalStatus,
        reviewer: str | None = None,
        decided_at: datetime | None = None,
    ) -> ApprovalItem | None:
        """pending → approved/rejected, exactly once. None if it was already decided."""
        decided = item.model_copy(update={
            "status":     status,
            "reviewer":   reviewer,
            "decided_at": decided_at or utcnow(),
        })
        cursor = await self.db.execute(
            "UPDATE approvals SET status = ?, data = ? WHERE id = ? AND status = ?",
            (status.value, decided.model_dump_json(), item.id, ApprovalStatus.PENDING.value),
        )
        await self.db.commit()
        return decided if cursor.rowcount == 1 else None

    async def list_approvals(self, user_id: str | None = None, status: ApprovalStatus | None = None) -> list[ApprovalItem]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetch_models(
            ApprovalItem, f"SELECT data FROM approvals{where} ORDER BY created_at", tuple(params)
        )

    # ── Escalations ─────────────────────────────────────────────────────────

    async def create_escalation(self, record: EscalationRecord) -> EscalationRecord:
        await self.db.execute(
            "INSERT INTO escalations (id, user_id, workflow_id, status, created_at, data) VALUES (?, ?, ?, ?, ?, ?)",
            (record.id, record.user_id, record.workflow_id, record.status, _ts(record.created_at), record.model_dump_json()),
        )
        await self.db.commit()
        return record

    async def list_escalations(self, user_id: str | None = None, workflow_id: str | None = None) -> list[EscalationRecord]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetch_models(
            EscalationRecord, f"SELECT data FROM escalations{where} ORDER BY created_at", tuple(params)
        )


@asynccontextmanager
async def open_store(db_path: str | None = None) -> AsyncIterator[Store]:
    """
    Async context manager that opens a Store, creates the tables if needed,
    and closes the connection on exit.

    Args:
        db_path: Path to the SQLite file. Defaults to get_db_path().
                 Pass ":memory:" for an in-process database.
    """
    store = Store(db_path)
    await store.open()
    try:
        logger.info("[store] SQLite store ready")
        yield store
    finally:
        await store.close()
