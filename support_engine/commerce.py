"""
Business System (Order Source)
==============================
The store platform that owns orders, payments and addresses. The engine asks
it four things:

  find_order(number)                   order by its customer-facing number
  latest_order_for_email(email)        fallback when the email names no order
  cancel_and_refund(order)             side effect of a successful cancellation
  update_shipping_address(order, addr) side effect of a successful address change

WooCommerceStore implements this over the WooCommerce REST API (v3) with
consumer key/secret basic auth. InMemoryOrderSource backs the demo and tests.

Lookups that fail at the HTTP level raise IntegrationUnavailable (the email is
escalated before any workflow exists). Side effects never raise; they return
SideEffectResult(success=False, message=...) and the engine escalates.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

import httpx
from pydantic import BaseModel

from .errors import IntegrationUnavailable, OrderValidationError
from .models import Address, OrderData, RequestKind

logger = logging.getLogger(__name__)

NON_CANCELLABLE_STATUSES: frozenset[str] = frozenset({
    "completed", "shipped", "delivered", "cancelled", "refunded",
})


class SideEffectResult(BaseModel):
    success: bool
    message: str = ""
    refund_id: str | None = None
    amount: float | None = None


@runtime_checkable
class OrderSource(Protocol):
    async def find_order(self, order_number: str) -> OrderData | None: ...

    async def latest_order_for_email(self, email: str) -> OrderData | None: ...

    async def cancel_and_refund(self, order: OrderData) -> SideEffectResult: ...

    async def update_shipping_address(self, order: OrderData, address: Address) -> SideEffectResult: ...


# ── Validation ──────────────────────────────────────────────────────────────

def validate_order(
    order: OrderData,
    requester_email: str,
    kind: RequestKind,
    now: datetime,
    max_age: timedelta = timedelta(days=30),
) -> None:
    """
    Sanity checks before any workflow is created. Raises OrderValidationError.

    Status, ownership, amount (cancellations only) and age.
    """
    status = order.status.strip().lower()
    if status in NON_CANCELLABLE_STATUSES:
        raise OrderValidationError(f"Order #{order.number} has status '{status}' and cannot be modified")

    if order.customer_email.strip().lower() != requester_email.strip().lower():
        raise OrderValidationError(f"Order #{order.number} does not belong to {requester_email}")

    if kind is RequestKind.CANCELLATION and order.total <= 0:
        raise OrderValidationError(f"Order #{order.number} total is $0 or invalid; no refund processing possible")

    if order.created_at is not None:
        created = order.created_at if order.created_at.tzinfo else order.created_at.replace(tzinfo=timezone.utc)
        if now - created > max_age:
            raise OrderValidationError(f"Order #{order.number} is older than {max_age.days} days")


# ── WooCommerce ─────────────────────────────────────────────────────────────

def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    # date_created_gmt has no offset but is UTC.
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_woocommerce_order(payload: dict) -> OrderData:
    billing  = payload.get("billing") or {}
    shipping = payload.get("shipping") or {}

    address = None
    if shipping.get("address_1"):
        address = Address(
            name=" ".join(p for p in (shipping.get("first_name", ""), shipping.get("last_name", "")) if p),
            line1=shipping["address_1"],
            line2=shipping.get("address_2") or "",
            city=shipping.get("city") or "",
            state=shipping.get("state") or "",
            postal_code=shipping.get("postcode") or "",
            country=shipping.get("country") or "",
        )

    return OrderData(
        id=str(payload["id"]),
        number=str(payload.get("number") or payload["id"]),
        status=str(payload.get("status", "")),
        created_at=_parse_timestamp(payload.get("date_created_gmt") or payload.get("date_created")),
        customer_email=billing.get("email", ""),
        customer_name=" ".join(p for p in (billing.get("first_name", ""), billing.get("last_name", "")) if p),
        total=float(payload.get("total") or 0),
        shipping_address=address,
        platform="woocommerce",
    )


def woocommerce_shipping(address: Address) -> dict:
    first, _, last = address.name.partition(" ")
    return {
        "first_name": first,
        "last_name":  last,
        "address_1":  address.line1,
        "address_2":  address.line2,
        "city":       address.city,
        "state":      address.state,
        "postcode":   address.postal_code,
        "country":    address.country,
    }


class WooCommerceStore:
    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = store_url.rstrip("/") + "/wp-json/wc/v3"
        self.auth     = httpx.BasicAuth(consumer_key, consumer_secret)
        self.client   = client or httpx.AsyncClient(timeout=timeout)
        self.timeout  = timeout

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self.client.request(
            method, self.base_url + path, auth=self.auth, timeout=self.timeout, **kwargs
        )

    async def find_order(self, order_number: str) -> OrderData | None:
        try:
            response = await self._request("GET", f"/orders/{order_number}")
            if response.status_code == 200:
                return parse_woocommerce_order(response.json())
            if response.status_code != 404:
                response.raise_for_status()

            # Order numbers can differ from post ids (sequential-number plugins).
            response = await self._request("GET", "/orders", params={"search": order_number})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise IntegrationUnavailable(f"Service temporarily unavailable: WooCommerce lookup failed ({exc})") from exc

        for payload in response.json():
            if str(payload.get("number")) == order_number:
                return parse_woocommerce_order(payload)
        return None

    async def latest_order_for_email(self, email: str) -> OrderData | None:
        try:
            response = await self._request(
                "GET", "/orders",
                params={"search": email, "orderby": "date", "order": "desc", "per_page": 20},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise IntegrationUnavailable(f"Service temporarily unavailable: WooCommerce lookup failed ({exc})") from exc

        for payload in response.json():
            if (payload.get("billing") or {}).get("email", "").lower() == email.lower():
                return parse_woocommerce_order(payload)
        return None

    async def cancel_and_refund(self, order: OrderData) -> SideEffectResult:
        try:
            response = await self._request("PUT", f"/orders/{order.id}", json={"status": "cancelled"})
            response.raise_for_status()

            response = await self._request(
                "POST", f"/orders/{order.id}/refunds",
                json={"amount": f"{order.total:.2f}", "api_refund": True},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[woocommerce] Cancel/refund failed for order %s: %s", order.number, exc)
            return SideEffectResult(success=False, message=f"WooCommerce cancel/refund failed: {exc}")

        refund = response.json()
        amount = float(refund.get("amount") or order.total)
        logger.info("[woocommerce] Refund %s created for order %s amount=%.2f", refund.get("id"), order.number, amount)
        return SideEffectResult(
            success=True,
            message="Order cancelled and refunded",
            refund_id=str(refund.get("id")) if refund.get("id") is not None else None,
            amount=amount,
        )

    async def update_shipping_address(self, order: OrderData, address: Address) -> SideEffectResult:
        try:
            response = await self._request("PUT", f"/orders/{order.id}", json={"shipping": woocommerce_shipping(address)})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[woocommerce] Address update failed for order %s: %s", order.number, exc)
            return SideEffectResult(success=False, message=f"WooCommerce address update failed: {exc}")
        return SideEffectResult(success=True, message="Shipping address updated")


# ── In-memory ───────────────────────────────────────────────────────────────

class InMemoryOrderSource:
    """Order source over a dict of OrderData keyed by number; records side effects."""

    def __init__(self, orders: list[OrderData] | None = None):
        self.orders: dict[str, OrderData] = {o.number: o for o in orders or []}
        self.refunds: list[str]           = []
        self.address_updates: list[tuple[str, Address]] = []
        self.fail_side_effects = False

    def add(self, order: OrderData) -> None:
        self.orders[order.number] = order

    async def find_order(self, order_number: str) -> OrderData | None:
        return self.orders.get(order_number)

    async def latest_order_for_email(self, email: str) -> OrderData | None:
        mine = [o for o in self.orders.values() if o.customer_email.lower() == email.lower()]
        if not mine:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return max(mine, key=lambda o: o.created_at or epoch)

    async def cancel_and_refund(self, order: OrderData) -> SideEffectResult:
        if self.fail_side_effects:
            return SideEffectResult(success=False, message="Refund declined")
        self.refunds.append(order.number)
        self.orders[order.number] = order.model_copy(update={"status": "cancelled"})
        return SideEffectResult(
            success=True,
            message="Order cancelled and refunded",
            refund_id=f"refund-{order.number}",
            amount=order.total,
        )

    async def update_shipping_address(self, order: OrderData, address: Address) -> SideEffectResult:
        if self.fail_side_effects:
            return SideEffectResult(success=False, message="Address update rejected")
        self.address_updates.append((order.number, address))
        self.orders[order.number] = order.model_copy(update={"shipping_address": address})
        return SideEffectResult(success=True, message="Shipping address updated")
