"""
Fulfillment adapters, one per FulfillmentMethod.

build_adapter() is the single place a FulfillmentMethod is turned into
behaviour. Adding a backend = one module + one entry here.
"""
import httpx

from ..config import EngineSettings
from ..mail import Mailer
from ..models import FulfillmentMethod
from .base import (
    BackendCheck,
    BackendHandle,
    ChangeRequest,
    FulfillmentAdapter,
    HealthStatus,
    MutationResult,
)
from .self_fulfillment import SelfFulfillmentAdapter
from .shipbob import ShipBobAdapter
from .shipstation import ShipStationAdapter
from .warehouse import WarehouseEmailAdapter, parse_warehouse_reply


def build_adapter(
    method: FulfillmentMethod,
    settings: EngineSettings,
    mailer: Mailer,
    client: httpx.AsyncClient,
) -> FulfillmentAdapter:
    if method is FulfillmentMethod.WAREHOUSE_EMAIL:
        return WarehouseEmailAdapter(settings, mailer)
    if method is FulfillmentMethod.SHIPBOB:
        return ShipBobAdapter(settings, client)
    if method is FulfillmentMethod.SHIPSTATION:
        return ShipStationAdapter(settings, client)
    if method is FulfillmentMethod.SELF_FULFILLMENT:
        return SelfFulfillmentAdapter()
    raise ValueError(f"No adapter for fulfillment method {method!r}")


__all__ = [
    "BackendCheck",
    "BackendHandle",
    "ChangeRequest",
    "FulfillmentAdapter",
    "HealthStatus",
    "MutationResult",
    "SelfFulfillmentAdapter",
    "ShipBobAdapter",
    "ShipStationAdapter",
    "WarehouseEmailAdapter",
    "build_adapter",
    "parse_warehouse_reply",
]
