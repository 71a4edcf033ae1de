"""
Tests for support_engine/routing.py
===================================
Routing functions are pure: they take state dicts and return strings.
No LLM, no graph, no store needed.

Covers:
  - route_entry: intake / approved (proceed, reject, uncertain) / reply
  - route_after_eligibility: approval flag, uncertainty, eligible, ineligible
  - route_after_dispatch: backend rejection / parked / resolved
  - escalation_reason always wins
"""
from datetime import timedelta

import pytest
from langgraph.graph import END

from conftest import make_order
from support_engine.models import (
    EligibilityResult,
    FulfillmentMethod,
    RequestKind,
    Workflow,
    WorkflowStep,
)
from support_engine.routing import (
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

ELIGIBLE   = EligibilityResult(is_eligible=True, reason="within window")
INELIGIBLE = EligibilityResult(is_eligible=False, reason="outside window")
UNCERTAIN  = EligibilityResult(is_eligible=False, reason="unknown", certain=False)


def _workflow(**updates) -> Workflow:
    wf = Workflow(
        user_id="seller-1",
        email_id="email-1",
        kind=RequestKind.CANCELLATION,
        order_number="1001",
        customer_email="ana@example.com",
        fulfillment_method=FulfillmentMethod.WAREHOUSE_EMAIL,
        order=make_order("1001", timedelta(hours=2)),
    )
    return wf.model_copy(update=updates)


# ---------------------------------------------------------------------------
# route_entry
# ---------------------------------------------------------------------------

class TestRouteEntry:
    def test_intake_checks_eligibility(self):
        assert route_entry({"workflow": _workflow(), "entry": "intake"}) == "check_eligibility"

    def test_missing_entry_defaults_to_intake(self):
        assert route_entry({"workflow": _workflow()}) == "check_eligibility"

    def test_reply_resolves_backend(self):
        assert route_entry({"workflow": _workflow(), "entry": "reply"}) == "resolve_backend"

    def test_approved_eligible_plan_proceeds(self):
        state = {"workflow": _workflow(eligibility=ELIGIBLE), "entry": "approved"}
        assert route_entry(state) == "health_check"

    def test_approved_uncertain_plan_proceeds(self):
        state = {"workflow": _workflow(eligibility=UNCERTAIN), "entry": "approved"}
        assert route_entry(state) == "health_check"

    def test_approved_rejection_plan_notifies(self):
        state = {"workflow": _workflow(eligibility=INELIGIBLE), "entry": "approved"}
        assert route_entry(state) == "notify_ineligible"


# ---------------------------------------------------------------------------
# route_after_eligibility
# ---------------------------------------------------------------------------

class TestRouteAfterEligibility:
    def test_eligible_without_approval_goes_to_health_check(self):
        assert route_after_eligibility({"workflow": _workflow(eligibility=ELIGIBLE)}) == "health_check"

    def test_ineligible_without_approval_notifies(self):
        assert route_after_eligibility({"workflow": _workflow(eligibility=INELIGIBLE)}) == "notify_ineligible"

    @pytest.mark.parametrize("eligibility", [ELIGIBLE, INELIGIBLE])
    def test_approval_required_always_requests_approval(self, eligibility):
        state = {"workflow": _workflow(eligibility=eligibility, approval_required=True)}
        assert route_after_eligibility(state) == "request_approval"

    def test_uncertain_requests_approval_even_when_not_required(self):
        assert route_after_eligibility({"workflow": _workflow(eligibility=UNCERTAIN)}) == "request_approval"

    def test_missing_eligibility_escalates(self):
        assert route_after_eligibility({"workflow": _workflow()}) == "escalate"


# ---------------------------------------------------------------------------
# route_after_dispatch / resolution
# ---------------------------------------------------------------------------

class TestRouteAfterDispatch:
    def test_backend_rejection_notifies(self):
        state = {"workflow": _workflow(step=WorkflowStep.BACKEND_DISPATCHED), "rejection": "backend"}
        assert route_after_dispatch(state) == "notify_ineligible"

    @pytest.mark.parametrize("step", [WorkflowStep.AWAITING_BACKEND, WorkflowStep.AWAITING_MANUAL])
    def test_parked_workflow_ends_the_run(self, step):
        assert route_after_dispatch({"workflow": _workflow(step=step)}) == END

    def test_synchronous_success_applies_mutation(self):
        wf = _workflow(step=WorkflowStep.BACKEND_RESOLVED, was_mutation_successful=True)
        assert route_after_dispatch({"workflow": wf}) == "apply_mutation"

    def test_synchronous_failure_notifies_outcome(self):
        wf = _workflow(step=WorkflowStep.BACKEND_RESOLVED, was_mutation_successful=False)
        assert route_after_dispatch({"workflow": wf}) == "notify_outcome"

    def test_reply_success_applies_mutation(self):
        assert route_after_resolution({"workflow": _workflow(was_mutation_successful=True)}) == "apply_mutation"

    def test_reply_failure_notifies_outcome(self):
        assert route_after_resolution({"workflow": _workflow(was_mutation_successful=False)}) == "notify_outcome"


# ---------------------------------------------------------------------------
# escalation_reason short-circuits every router
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("router", [
    route_after_eligibility,
    route_after_approval,
    route_after_health,
    route_after_acknowledge,
    route_after_dispatch,
    route_after_resolution,
    route_after_mutation,
    route_after_notify,
])
def test_escalation_reason_routes_to_escalate(router):
    state = {"workflow": _workflow(eligibility=ELIGIBLE), "escalation_reason": "boom"}
    assert router(state) == "escalate"


def test_plain_transitions():
    state = {"workflow": _workflow()}
    assert route_after_approval(state) == END
    assert route_after_health(state) == "acknowledge"
    assert route_after_acknowledge(state) == "dispatch_backend"
    assert route_after_mutation(state) == "notify_outcome"
    assert route_after_notify(state) == END
