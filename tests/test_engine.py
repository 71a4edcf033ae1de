"""
Tests for support_engine/engine.py (through the compiled graph)
===============================================================
End-to-end runs against a real in-memory Store, a recording mail transport,
an in-memory order source and, for ShipStation, httpx.MockTransport.
No LLM: order numbers are found by pattern.

Covers:
  - Scenario A: warehouse email → awaiting_warehouse → "Canceled" → refund + final email once
  - Idempotence: replayed replies never re-send or re-refund
  - Scenario B: time-window rejection, no backend contact
  - Scenario C: ShipStation tracking number → backend rejection
  - duplicate suppression and the velocity cap, both per seller
  - approval: pending, execute (frozen plan), reject, double execution,
    claim-before-approve ordering
  - uncertain eligibility always goes to approval
  - escalation paths: safety rejection, unhealthy backend, side-effect failure,
    unexpected exception
  - self-fulfillment parks in awaiting_manual
  - address change through the warehouse
  - intake failures raise before any workflow exists
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import CUSTOMER, NOW, WAREHOUSE, BlockSafety, make_order, make_request
from support_engine.adapters.base import HealthStatus
from support_engine.config import EngineSettings
from support_engine.engine import WorkflowEngine
from support_engine.errors import (
    ApprovalStateError,
    ConfigurationError,
    DuplicateRequest,
    OrderNotIdentified,
    OrderValidationError,
    VelocityLimitExceeded,
)
from support_engine.extraction import OrderNumberExtractor
from support_engine.mail import Mailer
from support_engine.models import (
    ApprovalStatus,
    FulfillmentMethod,
    Priority,
    RequestKind,
    WorkflowStatus,
    WorkflowStep,
)

CANCEL = RequestKind.CANCELLATION


async def _event_types(engine, workflow_id: str) -> list[str]:
    return [e.event_type for e in await engine.get_events(workflow_id)]


def shipstation_api(tracking: str | None = None):
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        path = request.url.path
        if path == "/stores":
            return httpx.Response(200, json=[{"storeId": 1}])
        if path == "/orders":
            return httpx.Response(200, json={"orders": [
                {"orderId": 77, "orderNumber": "1001", "orderKey": "k-1001", "orderStatus": "awaiting_shipment"},
            ]})
        if path == "/shipments":
            shipments = [{"shipmentId": 5, "trackingNumber": tracking, "voided": False}] if tracking else []
            return httpx.Response(200, json={"shipments": shipments})
        if path in ("/orders/createorder", "/shipments/voidlabel"):
            return httpx.Response(200, json={})
        return httpx.Response(404)

    return handler, calls


def _shipstation_settings() -> EngineSettings:
    return EngineSettings(
        fulfillment_method=FulfillmentMethod.SHIPSTATION,
        shipstation_api_key="key",
        shipstation_api_secret="secret",
    )


# ---------------------------------------------------------------------------
# Scenario A + idempotence
# ---------------------------------------------------------------------------

class TestWarehouseCancellation:
    async def test_request_parks_awaiting_warehouse(self, engine, settings, transport):
        wf = await engine.start_request(make_request(), CANCEL, settings)

        assert wf.status is WorkflowStatus.AWAITING_WAREHOUSE
        assert wf.step is WorkflowStep.AWAITING_BACKEND
        assert wf.customer_acknowledgment_sent
        assert wf.backend_request_sent
        assert wf.timeout_at == NOW + timedelta(hours=8)
        assert wf.correlation.warehouse_thread == "URGENT: Cancel Order #1001"

        assert [m.subject for m in transport.to(WAREHOUSE)] == ["URGENT: Cancel Order #1001"]
        assert len(transport.to(CUSTOMER)) == 1

    async def test_canceled_reply_refunds_and_notifies_once(self, engine, settings, transport, orders):
        wf   = await engine.start_request(make_request(), CANCEL, settings)
        done = await engine.handle_warehouse_reply(wf.id, "Canceled", settings)

        assert done.status is WorkflowStatus.CANCELED
        assert done.step is WorkflowStep.CUSTOMER_NOTIFIED
        assert done.refund_processed
        assert done.refund_amount == pytest.approx(89.90)
        assert done.final_notification_sent
        assert done.completed_at is not None
        assert orders.refunds == ["1001"]

        customer_mail = transport.to(CUSTOMER)
        assert len(customer_mail) == 2
        assert customer_mail[-1].subject == "Order #1001 canceled and refunded"
        assert "$89.90" in customer_mail[-1].text

    async def test_replayed_reply_is_a_no_op(self, engine, settings, transport, orders):
        wf = await engine.start_request(make_request(), CANCEL, settings)
        await engine.handle_warehouse_reply(wf.id, "Canceled", settings)
        sent = len(transport.sent)

        again = await engine.handle_warehouse_reply(wf.id, "Canceled", settings)

        assert again.status is WorkflowStatus.CANCELED
        assert len(transport.sent) == sent
        assert orders.refunds == ["1001"]
        assert "duplicate_reply_ignored" in await _event_types(engine, wf.id)

    async def test_cannot_cancel_reply(self, engine, settings, transport, orders):
        wf   = await engine.start_request(make_request(), CANCEL, settings)
        done = await engine.handle_warehouse_reply(wf.id, "Cannot cancel - already shipped this morning", settings)

        assert done.status is WorkflowStatus.CANNOT_CANCEL
        assert done.step is WorkflowStep.CANNOT_COMPLETE
        assert not done.refund_processed
        assert orders.refunds == []
        assert transport.to(CUSTOMER)[-1].subject == "Order #1001 - cancellation attempt result"

    async def test_not_cancelled_reply_never_refunds(self, engine, settings, orders):
        wf   = await engine.start_request(make_request(), CANCEL, settings)
        done = await engine.handle_warehouse_reply(wf.id, "Order was not cancelled, sorry.", settings)

        assert done.status is WorkflowStatus.CANNOT_CANCEL
        assert not done.refund_processed
        assert orders.refunds == []

    async def test_reply_correlated_by_order_number(self, engine, settings):
        wf   = await engine.start_request(make_request(), CANCEL, settings)
        done = await engine.correlate_reply("seller-1", "Re: URGENT: Cancel Order #1001", "Canceled", settings)

        assert done is not None
        assert done.id == wf.id
        assert done.status is WorkflowStatus.CANCELED

    async def test_uncorrelated_reply_returns_none(self, engine, settings):
        await engine.start_request(make_request(), CANCEL, settings)
        assert await engine.correlate_reply("seller-1", "Re: hello", "Canceled", settings) is None
        assert await engine.correlate_reply("seller-1", "Order #9999", "Canceled", settings) is None

    async def test_side_effect_failure_escalates_without_success_email(self, engine, settings, transport, orders, store):
        orders.fail_side_effects = True
        wf   = await engine.start_request(make_request(), CANCEL, settings)
        done = await engine.handle_warehouse_reply(wf.id, "Canceled", settings)

        assert done.status is WorkflowStatus.ESCALATED
        assert "store update failed" in done.escalation_reason
        assert len(transport.to(CUSTOMER)) == 1
        assert len(await store.list_escalations(workflow_id=wf.id)) == 1

    async def test_events_trace_every_transition(self, engine, settings):
        wf = await engine.start_request(make_request(), CANCEL, settings)
        await engine.handle_warehouse_reply(wf.id, "Canceled", settings)

        types = await _event_types(engine, wf.id)
        assert types[0] == "workflow_created"
        for expected in ("eligibility_checked", "customer_acknowledged", "backend_dispatched",
                         "awaiting_backend", "backend_reply_received", "refund_processed", "customer_notified"):
            assert expected in types
        assert types.index("refund_processed") < types.index("customer_notified")


# ---------------------------------------------------------------------------
# Scenario B / C: the two kinds of "cannot proceed"
# ---------------------------------------------------------------------------

class TestIneligible:
    async def test_time_window_rejection(self, engine, settings, transport):
        wf = await engine.start_request(make_request("Please cancel order #1002"), CANCEL, settings)

        assert wf.status is WorkflowStatus.CANNOT_CANCEL
        assert wf.step is WorkflowStep.INELIGIBLE_NOTIFIED
        assert wf.eligibility is not None and not wf.eligibility.is_eligible
        assert not wf.backend_request_sent
        assert transport.to(WAREHOUSE) == []
        assert [m.subject for m in transport.to(CUSTOMER)] == ["Order #1002 - cancellation not possible"]
        assert "outside our cancellation window" in transport.sent[0].text

    async def test_shipstation_tracking_number_is_backend_rejection(self, store, mailer, orders, clock, transport):
        handler, calls = shipstation_api(tracking="1Z999")
        engine = WorkflowEngine(
            store, mailer, orders,
            extractor=OrderNumberExtractor(use_model=False),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=clock,
        )
        try:
            wf = await engine.start_request(make_request(), CANCEL, _shipstation_settings())
        finally:
            await engine.aclose()

        assert wf.status is WorkflowStatus.CANNOT_CANCEL
        assert wf.step is WorkflowStep.CANNOT_COMPLETE
        assert wf.eligibility.is_eligible
        assert not any(method == "POST" for method, _ in calls)
        assert orders.refunds == []

        subjects = [m.subject for m in transport.to(CUSTOMER)]
        assert subjects[-1] == "Order #1001 - cancellation not possible"
        assert "processed by our fulfillment center" in transport.to(CUSTOMER)[-1].text
        assert "backend_ineligible" in await _event_types(engine, wf.id)

    async def test_shipstation_cancellation_resolves_synchronously(self, store, mailer, orders, clock):
        handler, calls = shipstation_api(tracking=None)
        engine = WorkflowEngine(
            store, mailer, orders,
            extractor=OrderNumberExtractor(use_model=False),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=clock,
        )
        try:
            wf = await engine.start_request(make_request(), CANCEL, _shipstation_settings())
        finally:
            await engine.aclose()

        assert wf.status is WorkflowStatus.CANCELED
        assert wf.correlation.shipstation_order_id == "77"
        assert ("POST", "/orders/createorder") in calls
        assert orders.refunds == ["1001"]


# ---------------------------------------------------------------------------
# Duplicate / velocity guards and intake failures
# ---------------------------------------------------------------------------

class TestIntakeGuards:
    async def test_duplicate_within_window_is_rejected(self, engine, settings):
        await engine.start_request(make_request(), CANCEL, settings)

        with pytest.raises(DuplicateRequest):
            await engine.start_request(make_request(email_id="email-2"), CANCEL, settings)

        assert len(await engine.active_workflows("seller-1")) == 1

    async def test_velocity_cap(self, engine, orders):
        settings = EngineSettings(warehouse_email=WAREHOUSE, velocity_limit=2)
        orders.add(make_order("1003"))
        orders.add(make_order("1004"))

        await engine.start_request(make_request("cancel order #1001"), CANCEL, settings)
        await engine.start_request(make_request("cancel order #1003", email_id="e-2"), CANCEL, settings)
        with pytest.raises(VelocityLimitExceeded):
            await engine.start_request(make_request("cancel order #1004", email_id="e-3"), CANCEL, settings)

    async def test_guards_are_per_seller(self, engine):
        settings = EngineSettings(warehouse_email=WAREHOUSE, velocity_limit=1)
        await engine.start_request(make_request(), CANCEL, settings)

        other_seller = make_request(email_id="email-2").model_copy(update={"user_id": "seller-2"})
        wf = await engine.start_request(other_seller, CANCEL, settings)

        assert wf.user_id == "seller-2"
        assert wf.status is WorkflowStatus.AWAITING_WAREHOUSE

    async def test_intake_locks_are_released(self, engine, settings):
        await engine.start_request(make_request(), CANCEL, settings)
        with pytest.raises(DuplicateRequest):
            await engine.start_request(make_request(email_id="email-2"), CANCEL, settings)

        assert engine._intake_locks == {}

    async def test_no_order_found(self, engine, settings, store):
        request = make_request("Please cancel my order").model_copy(update={"customer_email": "nobody@example.com"})
        with pytest.raises(OrderNotIdentified) as exc:
            await engine.start_request(request, CANCEL, settings)

        assert "Could not identify order" in str(exc.value)
        assert await store.active_workflows("seller-1") == []

    async def test_falls_back_to_latest_order_for_email(self, engine, settings):
        wf = await engine.start_request(make_request("Please cancel what I just bought"), CANCEL, settings)
        assert wf.order_number == "1001"

    async def test_order_of_another_customer_fails_validation(self, engine, settings, orders):
        orders.add(make_order("2001", customer_email="someone@else.com"))
        with pytest.raises(OrderValidationError):
            await engine.start_request(make_request("cancel order #2001"), CANCEL, settings)

    async def test_address_change_without_address_fails_validation(self, engine, settings):
        with pytest.raises(OrderValidationError):
            await engine.start_request(make_request("Change the address on order #1001 please"), RequestKind.ADDRESS_CHANGE, settings)

    async def test_missing_backend_config(self, engine):
        with pytest.raises(ConfigurationError):
            await engine.start_request(make_request(), CANCEL, EngineSettings())


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------

class TestApproval:
    @pytest.fixture
    def approval_settings(self) -> EngineSettings:
        return EngineSettings(warehouse_email=WAREHOUSE, approval_required=True)

    async def test_pending_approval_sends_nothing(self, engine, approval_settings, transport, store):
        wf = await engine.start_request(make_request(), CANCEL, approval_settings)

        assert wf.status is WorkflowStatus.PENDING_APPROVAL
        assert wf.approval_id is not None
        assert transport.sent == []

        item = await store.get_approval(wf.approval_id)
        assert item.status is ApprovalStatus.PENDING
        assert item.workflow_id == wf.id
        assert item.metadata["order_number"] == "1001"
        assert item.metadata["fulfillment_method"] == "warehouse_email"
        assert item.metadata["plan"] == "proceed"
        assert any(a.startswith("COMPLETED: Eligibility check") for a in item.metadata["planned_actions"])
        assert any("URGENT: Cancel Order #1001" in a for a in item.metadata["planned_actions"])

    async def test_execute_approved_replays_frozen_plan(self, engine, approval_settings, transport, clock, store):
        wf   = await engine.start_request(make_request(), CANCEL, approval_settings)
        item = await store.get_approval(wf.approval_id)

        # Past the 24h window by the time the human approves: the stored decision still holds.
        clock.advance(days=2)
        done = await engine.execute_approved(wf.approval_id, approval_settings, reviewer="lee")

        assert done.status is WorkflowStatus.AWAITING_WAREHOUSE
        assert transport.to(CUSTOMER)[0].text == item.proposed_customer_response
        assert (await store.get_approval(wf.approval_id)).status is ApprovalStatus.APPROVED

        final = await engine.handle_warehouse_reply(wf.id, "Canceled", approval_settings)
        assert final.status is WorkflowStatus.CANCELED

    async def test_executing_twice_is_refused(self, engine, approval_settings):
        wf = await engine.start_request(make_request(), CANCEL, approval_settings)
        await engine.execute_approved(wf.approval_id, approval_settings)

        with pytest.raises(ApprovalStateError):
            await engine.execute_approved(wf.approval_id, approval_settings)

    async def test_failed_claim_leaves_item_pending(self, engine, approval_settings, store, transport):
        wf = await engine.start_request(make_request(), CANCEL, approval_settings)
        engine.store.claim_workflow = AsyncMock(return_value=None)

        with pytest.raises(ApprovalStateError):
            await engine.execute_approved(wf.approval_id, approval_settings)

        assert (await store.get_approval(wf.approval_id)).status is ApprovalStatus.PENDING
        assert transport.sent == []

    async def test_unrecorded_approval_escalates_claimed_workflow(self, engine, approval_settings, store, transport):
        wf = await engine.start_request(make_request(), CANCEL, approval_settings)
        engine.approvals.decide = AsyncMock(side_effect=ApprovalStateError("decided concurrently"))

        done = await engine.execute_approved(wf.approval_id, approval_settings)

        assert done.status is WorkflowStatus.ESCALATED
        assert transport.sent == []
        assert len(await store.list_escalations(workflow_id=wf.id)) == 1

    async def test_reject_closes_workflow_without_action(self, engine, approval_settings, transport, store):
        wf   = await engine.start_request(make_request(), CANCEL, approval_settings)
        done = await engine.reject_approval(wf.approval_id, reviewer="lee")

        assert done.status is WorkflowStatus.REJECTED
        assert done.is_terminal
        assert transport.sent == []
        assert (await store.get_approval(wf.approval_id)).status is ApprovalStatus.REJECTED
        assert "approval_rejected" in await _event_types(engine, wf.id)

    async def test_approved_rejection_plan_sends_drafted_text(self, engine, approval_settings, transport, store):
        wf   = await engine.start_request(make_request("Please cancel order #1002"), CANCEL, approval_settings)
        item = await store.get_approval(wf.approval_id)
        assert item.metadata["plan"] == "reject"

        done = await engine.execute_approved(wf.approval_id, approval_settings)

        assert done.status is WorkflowStatus.CANNOT_CANCEL
        assert transport.to(WAREHOUSE) == []
        assert transport.to(CUSTOMER)[0].text == item.proposed_customer_response

    async def test_uncertain_eligibility_requires_approval(self, engine, settings, orders, store):
        orders.add(make_order("1005", age=None))
        wf = await engine.start_request(make_request("cancel order #1005"), CANCEL, settings)

        assert wf.status is WorkflowStatus.PENDING_APPROVAL
        item = await store.get_approval(wf.approval_id)
        assert item.confidence == 50
        assert any("UNCERTAIN" in a for a in item.metadata["planned_actions"])

        done = await engine.execute_approved(wf.approval_id, settings)
        assert done.status is WorkflowStatus.AWAITING_WAREHOUSE

    async def test_reply_while_pending_does_not_skip_approval(self, engine, approval_settings, settings, orders):
        wf = await engine.start_request(make_request(), CANCEL, approval_settings)
        assert wf.approval_required

        # Turning the flag off afterwards changes nothing for this workflow.
        same = await engine.handle_warehouse_reply(wf.id, "Canceled", settings)

        assert same.status is WorkflowStatus.PENDING_APPROVAL
        assert orders.refunds == []
        assert "unexpected_reply" in await _event_types(engine, wf.id)


# ---------------------------------------------------------------------------
# Escalation paths
# ---------------------------------------------------------------------------

class TestEscalation:
    async def test_safety_rejection_escalates_and_sends_nothing(self, store, transport, orders, clock, settings):
        engine = WorkflowEngine(store, Mailer(transport, BlockSafety()), orders,
                                extractor=OrderNumberExtractor(use_model=False), clock=clock)
        wf = await engine.start_request(make_request(), CANCEL, settings)
        await engine.aclose()

        assert wf.status is WorkflowStatus.ESCALATED
        assert "content safety" in wf.escalation_reason
        assert transport.sent == []
        assert "safety_rejected" in await _event_types(engine, wf.id)

        records = await store.list_escalations(workflow_id=wf.id)
        assert len(records) == 1
        assert records[0].priority is Priority.HIGH

    async def test_unhealthy_backend_escalates_before_acknowledging(self, engine, settings, transport, store):
        transport.healthy = False
        wf = await engine.start_request(make_request(), CANCEL, settings)

        assert wf.status is WorkflowStatus.ESCALATED
        assert wf.escalation_reason.startswith("Service temporarily unavailable")
        assert transport.sent == []
        assert "integration_unavailable" in await _event_types(engine, wf.id)

    async def test_unexpected_exception_escalates(self, store, mailer, orders, clock, settings):
        broken = MagicMock()
        broken.health_check      = AsyncMock(return_value=HealthStatus(healthy=True))
        broken.check_eligibility = AsyncMock(side_effect=RuntimeError("backend exploded"))

        engine = WorkflowEngine(store, mailer, orders, extractor=OrderNumberExtractor(use_model=False),
                                adapter_factory=lambda *args: broken, clock=clock)
        wf = await engine.start_request(make_request(), CANCEL, settings)
        await engine.aclose()

        assert wf.status is WorkflowStatus.ESCALATED
        assert "backend exploded" in wf.escalation_reason
        assert len(await store.list_escalations(workflow_id=wf.id)) == 1


# ---------------------------------------------------------------------------
# Other backends / request kinds
# ---------------------------------------------------------------------------

class TestOtherPaths:
    async def test_self_fulfillment_awaits_manual(self, engine, transport, store):
        settings = EngineSettings(fulfillment_method=FulfillmentMethod.SELF_FULFILLMENT)
        wf = await engine.start_request(make_request(), CANCEL, settings)

        assert wf.status is WorkflowStatus.AWAITING_MANUAL
        assert wf.is_terminal
        assert len(transport.to(CUSTOMER)) == 1

        records = await store.list_escalations(workflow_id=wf.id)
        assert len(records) == 1
        assert records[0].priority is Priority.MEDIUM
        assert records[0].reason.startswith("Manual fulfillment action required")

    async def test_address_change_through_warehouse(self, engine, settings, transport, orders):
        body = "Please change the address for order #1001.\nNew address: 55 Pine Ave, Dallas, TX 75201"
        wf   = await engine.start_request(make_request(body), RequestKind.ADDRESS_CHANGE, settings)

        assert wf.status is WorkflowStatus.AWAITING_WAREHOUSE
        assert wf.new_address.city == "Dallas"
        warehouse_mail = transport.to(WAREHOUSE)[0]
        assert warehouse_mail.subject == "URGENT: Update Address for Order #1001"
        assert "55 Pine Ave" in warehouse_mail.text

        done = await engine.handle_warehouse_reply(wf.id, "Updated", settings)

        assert done.status is WorkflowStatus.UPDATED
        assert done.address_updated
        assert orders.address_updates[0][1].line1 == "55 Pine Ave"
        assert "55 Pine Ave" in transport.to(CUSTOMER)[-1].text

    async def test_fulfillment_method_is_fixed_at_creation(self, engine, settings):
        wf = await engine.start_request(make_request(), CANCEL, settings)

        switched = EngineSettings(fulfillment_method=FulfillmentMethod.SELF_FULFILLMENT, warehouse_email=WAREHOUSE)
        done     = await engine.handle_warehouse_reply(wf.id, "Canceled", switched)

        assert done.fulfillment_method is FulfillmentMethod.WAREHOUSE_EMAIL
        assert done.status is WorkflowStatus.CANCELED
