"""
Terminal Demo
=============
Runs one cancellation end-to-end against an in-memory store, with a console
mail transport and a static order source. No API keys needed: order numbers
are found by pattern and the outbound safety check is replaced by an
allow-all checker.

Usage:
    python demo.py

What happens:
  1. ana@example.com asks to cancel order #1001 (placed 2 hours ago)
  2. the time window allows it → acknowledgment + "URGENT: Cancel Order #1001"
     to the warehouse → workflow parks in awaiting_warehouse
  3. the warehouse replies "Canceled" → refund in the store → final email
  4. the same reply arrives again → ignored, nothing is sent twice

Pass --approval to run with SUPPORT_APPROVAL_REQUIRED semantics: the workflow
stops at pending_approval, prints the planned actions, and is then approved.
"""
import asyncio
import logging
import sys
from datetime import timedelta

from support_engine import CustomerRequest, EngineSettings, RequestKind, WorkflowEngine, open_store
from support_engine.commerce import InMemoryOrderSource
from support_engine.extraction import OrderNumberExtractor
from support_engine.mail import LoggingTransport, Mailer
from support_engine.models import Address, FulfillmentMethod, OrderData, utcnow
from support_engine.safety import SafetyVerdict


class AllowAllSafety:
    async def check(self, message: str) -> SafetyVerdict:
        return SafetyVerdict(allowed=True, decision="safe", reason="demo")


def _print_mail(transport: LoggingTransport, start: int) -> int:
    for _, message in transport.sent[start:]:
        print(f"\n  ✉  to: {message.to}")
        print(f"     subject: {message.subject}")
        for line in message.text.split("\n"):
            print(f"     | {line}")
    return len(transport.sent)


async def main(approval_required: bool = False):
    logging.basicConfig(level=logging.WARNING)

    print("\n" + "=" * 60)
    print("  Request Automation Engine - cancellation demo")
    print("=" * 60)

    orders = InMemoryOrderSource([
        OrderData(
            id="501",
            number="1001",
            status="processing",
            created_at=utcnow() - timedelta(hours=2),
            customer_email="ana@example.com",
            customer_name="Ana Lima",
            total=89.90,
            shipping_address=Address(name="Ana Lima", line1="12 Oak St", city="Austin", state="TX", postal_code="78701"),
        ),
    ])
    settings = EngineSettings(
        approval_required=approval_required,
        fulfillment_method=FulfillmentMethod.WAREHOUSE_EMAIL,
        warehouse_email="warehouse@example.com",
    )
    transport = LoggingTransport()
    mailer    = Mailer(transport, AllowAllSafety())
    shown     = 0

    async with open_store(":memory:") as store:
        engine = WorkflowEngine(store, mailer, orders, extractor=OrderNumberExtractor(use_model=False))
        try:
            request = CustomerRequest(
                user_id="seller-1",
                email_id="inbound-1",
                customer_email="ana@example.com",
                subject="Cancel order #1001",
                body="Hi, I ordered by mistake. Please cancel order #1001. Thanks, Ana",
            )
            print("\nCustomer: " + request.body)
            workflow = await engine.start_request(request, RequestKind.CANCELLATION, settings)
            print(f"\n[workflow {workflow.id[:8]}] status={workflow.status.value} step={workflow.step.value}")

            if workflow.approval_id:
                item = await engine.approvals.get(workflow.approval_id)
                print("\nPlanned actions awaiting approval:")
                for action in item.metadata["planned_actions"]:
                    print(f"  - {action}")
                workflow = await engine.execute_approved(item.id, settings, reviewer="demo")
                print(f"\n[approved] status={workflow.status.value} step={workflow.step.value}")

            shown = _print_mail(transport, shown)

            print("\nWarehouse: Canceled")
            workflow = await engine.handle_warehouse_reply(workflow.id, "Canceled", settings)
            print(f"\n[workflow {workflow.id[:8]}] status={workflow.status.value} refund={workflow.refund_amount}")
            shown = _print_mail(transport, shown)

            print("\nWarehouse (duplicate): Canceled")
            workflow = await engine.handle_warehouse_reply(workflow.id, "Canceled", settings)
            print(f"[workflow {workflow.id[:8]}] status={workflow.status.value}; emails sent: {len(transport.sent)}")

            print("\nAudit trail:")
            for event in await engine.get_events(workflow.id):
                print(f"  {event.created_at:%H:%M:%S}  {event.event_type:<24} {event.description}")
        finally:
            await engine.aclose()


if __name__ == "__main__":
    asyncio.run(main(approval_required="--approval" in sys.argv))
