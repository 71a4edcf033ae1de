"""
Warehouse Email Adapter
=======================
For sellers whose warehouse has no API: the "mutation" is an urgent email to
the warehouse, and the outcome arrives hours later as a free-text reply.

  check_eligibility  always eligible; the warehouse is the only one who knows
  attempt_mutation   sends "URGENT: Cancel Order #N" (or the address variant);
                     success means "request dispatched" and pending=True
  parse_reply        "Canceled" / "Updated" → success, anything else → failure

Test mode prefixes the subject with [TEST] and, when configured, sends to the
test inbox instead of the real warehouse.
"""
import logging
import re

from .. import templates
from ..config import EngineSettings
from ..errors import DeliveryFailed
from ..mail import Mailer
from ..models import FulfillmentMethod, OrderData, RequestKind
from .base import BackendCheck, BackendHandle, ChangeRequest, FulfillmentAdapter, HealthStatus, MutationResult

logger = logging.getLogger(__name__)

NEGATIVE_MARKERS = re.compile(
    r"\b(cannot|can't|cant|couldn't|could not|unable|too late|not possible|already (?:shipped|picked|packed)"
    r"|not (?:been |yet )?(?:cancel|updat|chang)\w*|wasn't|weren't)\b"
    r"|n't been",
    re.IGNORECASE,
)
SUCCESS_MARKERS: dict[RequestKind, re.Pattern] = {
    RequestKind.CANCELLATION:   re.compile(r"\bcancel(?:l)?ed\b", re.IGNORECASE),
    RequestKind.ADDRESS_CHANGE: re.compile(r"\b(updated|changed)\b", re.IGNORECASE),
}


def parse_warehouse_reply(text: str, kind: RequestKind) -> bool:
    """True when the warehouse confirms the change. Anything ambiguous is a no."""
    if NEGATIVE_MARKERS.search(text):
        return False
    return bool(SUCCESS_MARKERS[kind].search(text))


class WarehouseEmailAdapter(FulfillmentAdapter):
    method       = FulfillmentMethod.WAREHOUSE_EMAIL
    asynchronous = True

    def __init__(self, settings: EngineSettings, mailer: Mailer):
        self.settings = settings
        self.mailer   = mailer

    async def check_eligibility(self, order: OrderData, kind: RequestKind) -> BackendCheck:
        return BackendCheck(
            eligible=True,
            reason="Warehouse has no API; eligibility is confirmed by the warehouse reply",
            handle=self.default_handle(order),
        )

    async def attempt_mutation(self, handle: BackendHandle, request: ChangeRequest) -> MutationResult:
        recipient = self.settings.warehouse_recipient()
        if not recipient:
            return MutationResult(success=False, error=True, message="Warehouse email not configured")

        message = templates.warehouse_request(
            request.kind, handle.order_number, request.new_address, test_mode=self.settings.test_mode
        )
        try:
            await self.mailer.send_internal(request.user_id, recipient, message.subject, message.text)
        except DeliveryFailed as exc:
            logger.error("[warehouse] Request for order %s not sent: %s", handle.order_number, exc)
            return MutationResult(success=False, error=True, message=str(exc))

        logger.info("[warehouse] Request sent to %s for order %s", recipient, handle.order_number)
        return MutationResult(
            success=True,
            pending=True,
            message=f"Warehouse request sent to {recipient}",
            correlation={"warehouse_thread": message.subject},
        )

    async def health_check(self, user_id: str) -> HealthStatus:
        if not self.settings.warehouse_recipient():
            return HealthStatus(healthy=False, reason="Warehouse email not configured")
        if not await self.mailer.is_healthy(user_id):
            return HealthStatus(healthy=False, reason="Email service connection failed")
        return HealthStatus(healthy=True)
