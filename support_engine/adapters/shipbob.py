"""
ShipBob Adapter
===============
Synchronous cancellation through the ShipBob REST API.

Endpoints (bearer token + shipbob_channel_id header):
  GET /1.0/channel                     health check
  GET /1.0/order?reference_id=<num>    store order number → ShipBob order
  GET /2.0/shipment?order_id=<id>      shipments of an order
  PUT /1.0/shipment/<id>/cancel        cancel one shipment

Order statuses: Processing | Completed | On Hold | Exception | Cancelled.
A Completed order, or one with no shipment left to stop, is ineligible.

Cancelling cancels every active shipment and aggregates the outcome: all
succeed → success; otherwise "Cancelled X/N shipments..." and failure.

ShipBob exposes no address write for merchant orders, so an eligible address
change is handed to staff (manual=True) with the shipment ids attached.
"""
import logging

import httpx

from ..config import EngineSettings
from ..models import FulfillmentMethod, OrderData, RequestKind
from .base import (
    BACKEND_ERRORS,
    BackendCheck,
    BackendHandle,
    ChangeRequest,
    FulfillmentAdapter,
    HealthStatus,
    MutationResult,
    verb,
)

logger = logging.getLogger(__name__)

SHIPBOB_BASE_URL    = "https://api.shipbob.com"
SHIPBOB_SANDBOX_URL = "https://sandbox-api.shipbob.com"
HEALTH_TIMEOUT      = 5.0

FINISHED_SHIPMENT_STATUSES = frozenset({"Cancelled", "Completed"})


class ShipBobAdapter(FulfillmentAdapter):
    method = FulfillmentMethod.SHIPBOB

    def __init__(self, settings: EngineSettings, client: httpx.AsyncClient, timeout: float = 15.0):
        self.base_url = SHIPBOB_SANDBOX_URL if settings.shipbob_sandbox else SHIPBOB_BASE_URL
        self.headers  = {
            "Authorization":      f"Bearer {settings.shipbob_access_token}",
            "shipbob_channel_id": str(settings.shipbob_channel_id or ""),
            "Content-Type":       "application/json",
        }
        self.client  = client
        self.timeout = timeout

    async def _request(self, method: str, path: str, timeout: float | None = None, **kwargs) -> httpx.Response:
        response = await self.client.request(
            method, self.base_url + path, headers=self.headers, timeout=timeout or self.timeout, **kwargs
        )
        response.raise_for_status()
        return response

    async def check_eligibility(self, order: OrderData, kind: RequestKind) -> BackendCheck:
        try:
            response = await self._request("GET", "/1.0/order", params={"reference_id": order.number})
            orders = response.json()
            if not orders:
                return BackendCheck(eligible=False, reason="Order not found in ShipBob system")

            sb_order = orders[0]
            status   = sb_order.get("status")
            if status == "Cancelled":
                return BackendCheck(eligible=False, reason="Order already cancelled")
            if status == "Completed":
                return BackendCheck(
                    eligible=False,
                    reason=f"Order has already been shipped and cannot be {verb(kind)}",
                )

            response  = await self._request("GET", "/2.0/shipment", params={"order_id": sb_order["id"]})
            shipments = response.json()

            active = [s for s in shipments if s.get("status") not in FINISHED_SHIPMENT_STATUSES]
            if not active:
                return BackendCheck(eligible=False, reason="All shipments have already been processed or cancelled")

            handle = BackendHandle(
                backend=self.method,
                order_number=order.number,
                backend_order_id=str(sb_order["id"]),
                shipment_ids=[str(s["id"]) for s in active],
            )
        except BACKEND_ERRORS as exc:
            logger.error("[shipbob] Eligibility check failed for order %s: %s", order.number, exc)
            return BackendCheck(eligible=False, error=True, reason=f"Unable to check order status in ShipBob system: {exc}")

        return BackendCheck(
            eligible=True,
            reason=f"Order can be {verb(kind)}. {len(active)} shipment(s) affected.",
            handle=handle,
        )

    async def attempt_mutation(self, handle: BackendHandle, request: ChangeRequest) -> MutationResult:
        correlation = {"shipbob_order_id": handle.backend_order_id}

        if request.kind is RequestKind.ADDRESS_CHANGE:
            return MutationResult(
                success=False,
                manual=True,
                message=(
                    f"ShipBob order {handle.backend_order_id} needs its address changed in the ShipBob "
                    f"dashboard (shipments: {', '.join(handle.shipment_ids)})"
                ),
                correlation=correlation,
            )

        total     = len(handle.shipment_ids)
        cancelled = 0
        for shipment_id in handle.shipment_ids:
            try:
                await self._request("PUT", f"/1.0/shipment/{shipment_id}/cancel")
                cancelled += 1
                logger.info("[shipbob] Cancelled shipment %s", shipment_id)
            except BACKEND_ERRORS as exc:
                logger.error("[shipbob] Failed to cancel shipment %s: %s", shipment_id, exc)

        if total and cancelled == total:
            return MutationResult(
                success=True,
                message=f"Successfully cancelled all {total} shipments",
                correlation=correlation,
            )
        return MutationResult(
            success=False,
            message=f"Cancelled {cancelled}/{total} shipments. Some shipments may have already been processed.",
            correlation=correlation,
        )

    async def health_check(self, user_id: str) -> HealthStatus:
        try:
            response = await self.client.get(
                self.base_url + "/1.0/channel", headers=self.headers, timeout=HEALTH_TIMEOUT
            )
        except httpx.TimeoutException:
            return HealthStatus(healthy=False, reason="ShipBob API timeout - service may be unavailable")
        except httpx.HTTPError as exc:
            return HealthStatus(healthy=False, reason=f"ShipBob API error: {exc}")

        if response.status_code == 401:
            return HealthStatus(healthy=False, reason="ShipBob authentication failed - access token invalid")
        if response.status_code == 403:
            return HealthStatus(healthy=False, reason="ShipBob access forbidden - insufficient permissions")
        if response.status_code >= 400:
            return HealthStatus(healthy=False, reason=f"ShipBob API error: {response.status_code}")
        return HealthStatus(healthy=True)
