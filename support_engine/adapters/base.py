"""
Fulfillment Adapter Interface
=============================
One implementation per fulfillment backend. The adapter is chosen once, when
the workflow is created, from Workflow.fulfillment_method; the engine never
branches on the method again.

    check_eligibility(order, kind)        → BackendCheck
    attempt_mutation(handle, request)     → MutationResult
    health_check(user_id)                 → HealthStatus

Contract:
  - Never raise to the engine. HTTP and transport failures, and response
    bodies that are not the expected shape (BACKEND_ERRORS), come back as
    BackendCheck(error=True) / MutationResult(error=True) with a message.
  - A business "no" (already shipped, tracking number present) is
    eligible=False with error=False, so the customer gets the
    "cannot proceed" notification instead of an escalation.
  - MutationResult.pending means "request dispatched, outcome arrives later"
    (warehouse email). MutationResult.manual means a human finishes the job.
"""
from abc import ABC, abstractmethod
from typing import ClassVar

import httpx
from pydantic import BaseModel, Field

from ..models import Address, FulfillmentMethod, OrderData, RequestKind

# Malformed JSON is a ValueError; a missing key or a list where an object was
# expected is a KeyError / AttributeError.
BACKEND_ERRORS = (httpx.HTTPError, ValueError, KeyError, AttributeError)


class BackendHandle(BaseModel):
    backend: FulfillmentMethod
    order_number: str
    backend_order_id: str | None = None
    shipment_ids: list[str] = Field(default_factory=list)
    # Backend-native order snapshot, for APIs that update by full upsert.
    payload: dict = Field(default_factory=dict)


class BackendCheck(BaseModel):
    eligible: bool
    reason: str
    handle: BackendHandle | None = None
    error: bool = False


class ChangeRequest(BaseModel):
    user_id: str
    workflow_id: str
    kind: RequestKind
    order: OrderData
    new_address: Address | None = None


class MutationResult(BaseModel):
    success: bool
    message: str
    pending: bool = False
    manual: bool = False
    error: bool = False
    # Keys of BackendCorrelation to record on the workflow.
    correlation: dict = Field(default_factory=dict)


class HealthStatus(BaseModel):
    healthy: bool
    reason: str = ""


class FulfillmentAdapter(ABC):
    method: ClassVar[FulfillmentMethod]
    # True when the mutation outcome arrives later through a reply.
    asynchronous: ClassVar[bool] = False

    @abstractmethod
    async def check_eligibility(self, order: OrderData, kind: RequestKind) -> BackendCheck:
        ...

    @abstractmethod
    async def attempt_mutation(self, handle: BackendHandle, request: ChangeRequest) -> MutationResult:
        ...

    @abstractmethod
    async def health_check(self, user_id: str) -> HealthStatus:
        ...

    def default_handle(self, order: OrderData) -> BackendHandle:
        return BackendHandle(backend=self.method, order_number=order.number)


def verb(kind: RequestKind) -> str:
    return "cancelled" if kind is RequestKind.CANCELLATION else "changed"
