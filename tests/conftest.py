"""
pytest configuration for the support-engine test suite.

Sets PYTHONPATH so tests can import from the project root.
Prevents DSPy and LangChain from making real LLM calls during unit tests.

asyncio_mode = "auto" (set in pyproject.toml) means all async test functions
are collected as asyncio tests, no @pytest.mark.asyncio needed on
individual tests.

Shared fakes:
  FakeTransport   records outbound mail; can be told to refuse or to report unhealthy
  AllowSafety     content-safety check that allows everything
  BlockSafety     content-safety check that rejects everything
  FixedClock      injectable clock; advance() moves it forward
"""
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Ensure the project root is on sys.path so `import support_engine` and `import api` work
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Tests use mocked values and should not need real keys
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("LLM_PROVIDER", "groq")

from support_engine.commerce import InMemoryOrderSource  # noqa: E402
from support_engine.config import EngineSettings  # noqa: E402
from support_engine.engine import WorkflowEngine  # noqa: E402
from support_engine.extraction import OrderNumberExtractor  # noqa: E402
from support_engine.mail import Mailer, OutboundEmail  # noqa: E402
from support_engine.models import Address, CustomerRequest, FulfillmentMethod, OrderData  # noqa: E402
from support_engine.safety import SafetyVerdict  # noqa: E402
from support_engine.store import Store  # noqa: E402

# Wednesday 15:00 UTC: plain 24h window, no weekend grace.
NOW = datetime(2026, 10, 14, 15, 0, tzinfo=timezone.utc)

CUSTOMER  = "ana@example.com"
WAREHOUSE = "warehouse@example.com"


class FakeTransport:
    def __init__(self):
        self.sent: list[OutboundEmail] = []
        self.accept  = True
        self.healthy = True

    async def send_email(self, user_id: str, message: OutboundEmail) -> bool:
        if self.accept:
            self.sent.append(message)
        return self.accept

    async def health_check(self, user_id: str) -> bool:
        return self.healthy

    def to(self, address: str) -> list[OutboundEmail]:
        return [m for m in self.sent if m.to == address]

    def subjects(self) -> list[str]:
        return [m.subject for m in self.sent]


class AllowSafety:
    def __init__(self):
        self.checked: list[str] = []

    async def check(self, message: str) -> SafetyVerdict:
        self.checked.append(message)
        return SafetyVerdict(allowed=True, decision="safe", reason="test")


class BlockSafety:
    async def check(self, message: str) -> SafetyVerdict:
        return SafetyVerdict(allowed=False, decision="unsafe", reason="test rejection")


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_order(number: str = "1001", age: timedelta | None = timedelta(hours=2), **overrides) -> OrderData:
    fields = {
        "id":               f"post-{number}",
        "number":           number,
        "status":           "processing",
        "created_at":       NOW - age if age is not None else None,
        "customer_email":   CUSTOMER,
        "customer_name":    "Ana Lima",
        "total":            89.90,
        "shipping_address": Address(name="Ana Lima", line1="12 Oak St", city="Austin", state="TX", postal_code="78701"),
    }
    fields.update(overrides)
    return OrderData(**fields)


def make_request(body: str = "Please cancel order #1001", subject: str = "Cancel my order", email_id: str = "email-1") -> CustomerRequest:
    return CustomerRequest(
        user_id="seller-1",
        email_id=email_id,
        customer_email=CUSTOMER,
        subject=subject,
        body=body,
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def store():
    s = await Store(":memory:").open()
    yield s
    await s.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def mailer(transport) -> Mailer:
    return Mailer(transport, AllowSafety())


@pytest.fixture
def orders() -> InMemoryOrderSource:
    return InMemoryOrderSource([
        make_order("1001", timedelta(hours=2)),
        make_order("1002", timedelta(days=10)),
    ])


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(fulfillment_method=FulfillmentMethod.WAREHOUSE_EMAIL, warehouse_email=WAREHOUSE)


@pytest_asyncio.fixture
async def engine(store, mailer, orders, clock):
    e = WorkflowEngine(store, mailer, orders, extractor=OrderNumberExtractor(use_model=False), clock=clock)
    yield e
    await e.aclose()
