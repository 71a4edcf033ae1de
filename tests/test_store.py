"""
Tests for support_engine/store.py
=================================
Uses a real in-memory SQLite store (aiosqlite, ":memory:").

Covers:
  - create / get / require round trip of a Workflow with nested snapshots
  - save_workflow refuses to overwrite a terminal workflow
  - claim_workflow compare-and-set: second claim on a stale copy loses
  - duplicate / velocity queries by email and time
  - workflows_past_timeout only returns overdue awaiting_warehouse rows
  - awaiting_workflows_for_order / active_workflows filters
  - events are listed in insertion order
  - decide_approval is exactly-once
  - open_store context manager + SUPPORT_DB_PATH
"""
from datetime import timedelta

import pytest

from conftest import NOW, make_order
from support_engine.errors import WorkflowNotFound, WorkflowTerminal
from support_engine.models import (
    ApprovalItem,
    ApprovalStatus,
    Category,
    EligibilityResult,
    EscalationRecord,
    FulfillmentMethod,
    Priority,
    RequestKind,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
)
from support_engine.store import Store, get_db_path, open_store


def _workflow(
    number: str = "1001", email: str = "ana@example.com", created_at=NOW, user_id: str = "seller-1", **updates
) -> Workflow:
    return Workflow(
        user_id=user_id,
        email_id=f"email-{number}",
        kind=RequestKind.CANCELLATION,
        order_number=number,
        customer_email=email,
        fulfillment_method=FulfillmentMethod.WAREHOUSE_EMAIL,
        order=make_order(number),
        created_at=created_at,
        **updates,
    )


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

class TestWorkflowPersistence:
    async def test_round_trip(self, store):
        wf = _workflow(eligibility=EligibilityResult(is_eligible=True, reason="ok", order_created_at=NOW))
        await store.create_workflow(wf)

        loaded = await store.require_workflow(wf.id)
        assert loaded.order.number == "1001"
        assert loaded.order.shipping_address.city == "Austin"
        assert loaded.eligibility.order_created_at == NOW
        assert loaded.status is WorkflowStatus.PROCESSING

    async def test_missing_workflow(self, store):
        assert await store.get_workflow("nope") is None
        with pytest.raises(WorkflowNotFound):
            await store.require_workflow("nope")

    async def test_save_updates_row(self, store):
        wf = await store.create_workflow(_workflow())
        await store.save_workflow(wf.model_copy(update={"step": WorkflowStep.ACKNOWLEDGING}))
        assert (await store.require_workflow(wf.id)).step is WorkflowStep.ACKNOWLEDGING

    async def test_terminal_rows_are_write_protected(self, store):
        wf   = await store.create_workflow(_workflow())
        done = await store.save_workflow(wf.model_copy(update={"status": WorkflowStatus.CANCELED}))

        with pytest.raises(WorkflowTerminal):
            await store.save_workflow(done.model_copy(update={"status": WorkflowStatus.ESCALATED}))
        assert (await store.require_workflow(wf.id)).status is WorkflowStatus.CANCELED

    async def test_save_unknown_workflow(self, store):
        with pytest.raises(WorkflowNotFound):
            await store.save_workflow(_workflow())


class TestClaim:
    async def test_only_one_claim_wins(self, store):
        wf = await store.create_workflow(_workflow(
            status=WorkflowStatus.AWAITING_WAREHOUSE, step=WorkflowStep.AWAITING_BACKEND,
        ))

        first  = await store.claim_workflow(wf, status=WorkflowStatus.PROCESSING, step=WorkflowStep.BACKEND_RESOLVED)
        second = await store.claim_workflow(wf, status=WorkflowStatus.ESCALATED, step=WorkflowStep.ESCALATED)

        assert first is not None
        assert second is None
        assert (await store.require_workflow(wf.id)).step is WorkflowStep.BACKEND_RESOLVED

    async def test_terminal_cannot_be_claimed(self, store):
        wf = await store.create_workflow(_workflow(status=WorkflowStatus.REJECTED, step=WorkflowStep.REJECTED))
        assert await store.claim_workflow(wf, status=WorkflowStatus.PROCESSING) is None


class TestQueries:
    async def test_recent_for_order_respects_window_email_and_seller(self, store):
        await store.create_workflow(_workflow(created_at=NOW - timedelta(minutes=30)))
        await store.create_workflow(_workflow(created_at=NOW - timedelta(hours=3)))
        await store.create_workflow(_workflow(email="other@example.com"))
        await store.create_workflow(_workflow(user_id="seller-2"))

        recent = await store.recent_workflows_for_order("seller-1", "1001", "ANA@example.com", NOW - timedelta(hours=1))
        assert len(recent) == 1
        assert recent[0].user_id == "seller-1"

    async def test_count_recent_for_email(self, store):
        for n, age in (("1", 1), ("2", 5), ("3", 30)):
            await store.create_workflow(_workflow(number=n, created_at=NOW - timedelta(hours=age)))
        await store.create_workflow(_workflow(number="4", user_id="seller-2"))
        assert await store.count_recent_for_email("seller-1", "ana@example.com", NOW - timedelta(hours=24)) == 2
        assert await store.count_recent_for_email("seller-2", "ana@example.com", NOW - timedelta(hours=24)) == 1

    async def test_past_timeout_only_awaiting(self, store):
        overdue = await store.create_workflow(_workflow(
            number="1", status=WorkflowStatus.AWAITING_WAREHOUSE, step=WorkflowStep.AWAITING_BACKEND,
            timeout_at=NOW - timedelta(minutes=1),
        ))
        await store.create_workflow(_workflow(
            number="2", status=WorkflowStatus.AWAITING_WAREHOUSE, step=WorkflowStep.AWAITING_BACKEND,
            timeout_at=NOW + timedelta(hours=1),
        ))
        await store.create_workflow(_workflow(
            number="3", status=WorkflowStatus.CANCELED, timeout_at=NOW - timedelta(hours=1),
        ))

        assert [w.id for w in await store.workflows_past_timeout(NOW)] == [overdue.id]

    async def test_awaiting_for_order_and_active(self, store):
        waiting = await store.create_workflow(_workflow(
            status=WorkflowStatus.AWAITING_WAREHOUSE, step=WorkflowStep.AWAITING_BACKEND,
        ))
        await store.create_workflow(_workflow(number="1002", status=WorkflowStatus.CANNOT_CANCEL))

        assert [w.id for w in await store.awaiting_workflows_for_order("1001", "seller-1")] == [waiting.id]
        assert await store.awaiting_workflows_for_order("1001", "seller-2") == []
        assert [w.id for w in await store.active_workflows("seller-1")] == [waiting.id]


# ---------------------------------------------------------------------------
# Events / approvals / escalations
# ---------------------------------------------------------------------------

async def test_events_keep_insertion_order(store):
    for kind in ("workflow_created", "eligibility_checked", "customer_acknowledged"):
        await store.append_event(WorkflowEvent(workflow_id="wf-1", event_type=kind, description=kind, created_at=NOW))
    assert [e.event_type for e in await store.list_events("wf-1")] == [
        "workflow_created", "eligibility_checked", "customer_acknowledged",
    ]


async def test_approval_decided_exactly_once(store):
    item = await store.create_approval(ApprovalItem(
        user_id="seller-1", email_id="email-1", customer_email="ana@example.com",
        classification=Category.ORDER_CANCELLATION, proposed_customer_response="Hi",
    ))

    approved = await store.decide_approval(item, ApprovalStatus.APPROVED, reviewer="lee")
    again    = await store.decide_approval(item, ApprovalStatus.REJECTED)

    assert approved.status is ApprovalStatus.APPROVED
    assert again is None
    assert (await store.get_approval(item.id)).reviewer == "lee"
    assert await store.list_approvals(status=ApprovalStatus.PENDING) == []
    assert len(await store.list_approvals(user_id="seller-1")) == 1


async def test_escalations_filter_by_workflow(store):
    await store.create_escalation(EscalationRecord(user_id="seller-1", workflow_id="wf-1", reason="a", priority=Priority.HIGH))
    await store.create_escalation(EscalationRecord(user_id="seller-1", workflow_id="wf-2", reason="b"))

    assert [r.reason for r in await store.list_escalations(workflow_id="wf-1")] == ["a"]
    assert len(await store.list_escalations(user_id="seller-1")) == 2


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def test_open_store_creates_file(tmp_path):
    path = str(tmp_path / "engine.db")
    async with open_store(path) as store:
        wf = await store.create_workflow(_workflow())

    reopened = await Store(path).open()
    try:
        assert (await reopened.require_workflow(wf.id)).order_number == "1001"
    finally:
        await reopened.close()


def test_db_path_from_env(monkeypatch):
    monkeypatch.setenv("SUPPORT_DB_PATH", "/tmp/x.db")
    assert get_db_path() == "/tmp/x.db"
    monkeypatch.delenv("SUPPORT_DB_PATH")
    assert get_db_path() == "support_engine.db"


async def test_closed_store_raises():
    with pytest.raises(RuntimeError):
        await Store(":memory:").get_workflow("x")
