"""
ShipStation Adapter
===================
Synchronous cancellation and address change through the ShipStation API
(basic auth with API key + secret).

  GET  /stores                      health check
  GET  /orders?orderNumber=<num>    find the order
  GET  /shipments?orderId=<id>      shipments of the order
  POST /orders/createorder          upsert by orderKey: status or shipTo change
  POST /shipments/voidlabel         void a label that has not shipped

An order that is shipped or cancelled, or has any non-voided shipment with a
tracking number, is ineligible; that is distinct from the time-window rule.

Cancellation voids every remaining label, then marks the order cancelled.
Partial success is reported as "Cancelled X/N ..." and counts as failure.
"""
import logging

import httpx

from ..config import EngineSettings
from ..models import Address, FulfillmentMethod, OrderData, RequestKind
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

SHIPSTATION_BASE_URL = "https://ssapi.shipstation.com"


def ship_to(address: Address, previous: dict | None = None) -> dict:
    previous = previous or {}
    return {
        "name":        address.name or previous.get("name", ""),
        "company":     previous.get("company") or "",
        "street1":     address.line1,
        "street2":     address.line2,
        "street3":     "",
        "city":        address.city,
        "state":       address.state,
        "postalCode":  address.postal_code,
        "country":     address.country or previous.get("country", ""),
        "phone":       previous.get("phone") or "",
        "residential": True,
    }


class ShipStationAdapter(FulfillmentAdapter):
    method = FulfillmentMethod.SHIPSTATION

    def __init__(self, settings: EngineSettings, client: httpx.AsyncClient, timeout: float = 15.0):
        self.base_url = SHIPSTATION_BASE_URL
        self.auth     = httpx.BasicAuth(settings.shipstation_api_key or "", settings.shipstation_api_secret or "")
        self.client   = client
        self.timeout  = timeout

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self.client.request(
            method, self.base_url + path, auth=self.auth, timeout=self.timeout, **kwargs
        )
        response.raise_for_status()
        return response

    async def check_eligibility(self, order: OrderData, kind: RequestKind) -> BackendCheck:
        try:
            response = await self._request("GET", "/orders", params={"orderNumber": order.number})
            orders = response.json().get("orders") or []
            if not orders:
                return BackendCheck(eligible=False, reason="Order not found in ShipStation")

            ss_order = orders[0]
            status   = ss_order.get("orderStatus")
            if status == "cancelled":
                return BackendCheck(eligible=False, reason="Order is already cancelled")
            if status == "shipped":
                return BackendCheck(eligible=False, reason="Order has already been shipped")

            response  = await self._request("GET", "/shipments", params={"orderId": ss_order["orderId"]})
            shipments = response.json().get("shipments") or []

            live = [s for s in shipments if not s.get("voided")]
            if any(s.get("trackingNumber") for s in live):
                return BackendCheck(eligible=False, reason="Order has active shipments with tracking numbers")

            handle = BackendHandle(
                backend=self.method,
                order_number=order.number,
                backend_order_id=str(ss_order["orderId"]),
                shipment_ids=[str(s["shipmentId"]) for s in live],
                payload=ss_order,
            )
        except BACKEND_ERRORS as exc:
            logger.error("[shipstation] Eligibility check failed for order %s: %s", order.number, exc)
            return BackendCheck(eligible=False, error=True, reason=f"Error checking order status: {exc}")

        return BackendCheck(
            eligible=True,
            reason=f"Order can be {verb(kind)} - no active shipments found",
            handle=handle,
        )

    async def attempt_mutation(self, handle: BackendHandle, request: ChangeRequest) -> MutationResult:
        correlation = {
            "shipstation_order_id":     handle.backend_order_id,
            "shipstation_shipment_ids": list(handle.shipment_ids),
        }
        if request.kind is RequestKind.ADDRESS_CHANGE:
            return await self._update_address(handle, request, correlation)
        return await self._cancel(handle, correlation)

    async def _update_address(self, handle: BackendHandle, request: ChangeRequest, correlation: dict) -> MutationResult:
        if request.new_address is None:
            return MutationResult(success=False, error=True, message="No new address on the request", correlation=correlation)

        body = dict(handle.payload)
        body["shipTo"] = ship_to(request.new_address, handle.payload.get("shipTo"))
        try:
            await self._request("POST", "/orders/createorder", json=body)
        except httpx.HTTPError as exc:
            logger.error("[shipstation] Address update failed for order %s: %s", handle.order_number, exc)
            return MutationResult(
                success=False, error=True,
                message=f"Failed to update shipping address: {exc}",
                correlation=correlation,
            )
        return MutationResult(success=True, message="Shipping address updated successfully", correlation=correlation)

    async def _cancel(self, handle: BackendHandle, correlation: dict) -> MutationResult:
        steps     = len(handle.shipment_ids) + 1
        completed = 0

        for shipment_id in handle.shipment_ids:
            try:
                await self._request("POST", "/shipments/voidlabel", json={"shipmentId": int(shipment_id)})
                completed += 1
            except BACKEND_ERRORS as exc:
                logger.error("[shipstation] Failed to void label %s: %s", shipment_id, exc)

        body = dict(handle.payload)
        body["orderStatus"] = "cancelled"
        try:
            await self._request("POST", "/orders/createorder", json=body)
            completed += 1
        except httpx.HTTPError as exc:
            logger.error("[shipstation] Failed to cancel order %s: %s", handle.order_number, exc)

        if completed == steps:
            return MutationResult(success=True, message="Order cancelled in ShipStation", correlation=correlation)
        return MutationResult(
            success=False,
            message=f"Cancelled {completed}/{steps} ShipStation items. Some shipments may have already been processed.",
            correlation=correlation,
        )

    async def health_check(self, user_id: str) -> HealthStatus:
        try:
            await self._request("GET", "/stores")
        except httpx.HTTPStatusError as exc:
            return HealthStatus(healthy=False, reason=f"ShipStation API connection failed: {exc.response.status_code}")
        except httpx.HTTPError as exc:
            return HealthStatus(healthy=False, reason=f"ShipStation API connection failed: {exc}")
        return HealthStatus(healthy=True)
