"""
Timeout Monitor
===============
Periodic sweep over workflows parked in awaiting_warehouse past their
deadline. Each one is claimed with a compare-and-set and moved to
`escalated`, so a warehouse reply arriving at the same moment either wins
the claim (and the sweep skips it) or loses it (and is ignored as a replay).

Run it as a background task next to the API:

    monitor = TimeoutMonitor(store, EscalationQueue(store))
    task    = asyncio.create_task(monitor.run(interval=300, stop=stop_event))
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable

from .approval import EscalationQueue
from .models import (
    EscalationRecord,
    Priority,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from .store import Store

logger = logging.getLogger(__name__)


class TimeoutMonitor:
    def __init__(self, store: Store, escalations: EscalationQueue, clock: Callable[[], datetime] = utcnow):
        self.store       = store
        self.escalations = escalations
        self.clock       = clock

    async def sweep(self, now: datetime | None = None) -> list[Workflow]:
        """Escalate every overdue workflow. Returns the ones this sweep escalated."""
        now       = now or self.clock()
        overdue   = await self.store.workflows_past_timeout(now)
        escalated = []

        for workflow in overdue:
            overdue_by = now - workflow.timeout_at
            reason = (
                f"No backend reply for order #{workflow.order_number} within the deadline "
                f"({workflow.timeout_at.isoformat()})"
            )
            claimed = await self.store.claim_workflow(
                workflow,
                status=WorkflowStatus.ESCALATED,
                step=WorkflowStep.ESCALATED,
                escalation_reason=reason,
                timeout_at=None,
                completed_at=now,
            )
            if claimed is None:
                logger.info("[monitor] workflow=%s moved before it could be escalated", workflow.id)
                continue

            await self.store.append_event(WorkflowEvent(
                workflow_id=claimed.id,
                event_type="timeout_escalated",
                description=reason,
                metadata={"deadline": workflow.timeout_at.isoformat(), "overdue_seconds": int(overdue_by.total_seconds())},
                created_at=now,
            ))
            await self.escalations.escalate(EscalationRecord(
                user_id=claimed.user_id,
                email_id=claimed.email_id,
                workflow_id=claimed.id,
                customer_email=claimed.customer_email,
                priority=Priority.HIGH,
                reason=reason,
                metadata={
                    "order_number":       claimed.order_number,
                    "fulfillment_method": claimed.fulfillment_method.value,
                    "request_kind":       claimed.kind.value,
                },
                created_at=now,
            ))
            logger.warning("[monitor] workflow=%s escalated: %s", claimed.id, reason)
            escalated.append(claimed)

        if overdue:
            logger.info("[monitor] Sweep: %d overdue, %d escalated", len(overdue), len(escalated))
        return escalated

    async def run(self, interval: float = 300.0, stop: asyncio.Event | None = None) -> None:
        """Sweep every `interval` seconds until `stop` is set."""
        stop = stop or asyncio.Event()
        logger.info("[monitor] Started, interval=%ss", interval)
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("[monitor] Sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[monitor] Stopped")
