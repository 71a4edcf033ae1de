"""
Self-Fulfillment Adapter
========================
The seller packs and ships orders themselves. There is no external system to
ask or change: eligibility rests on the time window alone, and the mutation
parks the workflow in awaiting_manual for a person to finish.
"""
from ..models import FulfillmentMethod, OrderData, RequestKind
from .base import BackendCheck, BackendHandle, ChangeRequest, FulfillmentAdapter, HealthStatus, MutationResult, verb


class SelfFulfillmentAdapter(FulfillmentAdapter):
    method = FulfillmentMethod.SELF_FULFILLMENT

    async def check_eligibility(self, order: OrderData, kind: RequestKind) -> BackendCheck:
        return BackendCheck(eligible=True, reason="Self-fulfilled order", handle=self.default_handle(order))

    async def attempt_mutation(self, handle: BackendHandle, request: ChangeRequest) -> MutationResult:
        return MutationResult(
            success=False,
            manual=True,
            message=f"Order #{handle.order_number} must be {verb(request.kind)} manually by the seller",
        )

    async def health_check(self, user_id: str) -> HealthStatus:
        return HealthStatus(healthy=True)
