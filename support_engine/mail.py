"""
Outbound Mail
=============
Every email the engine sends goes through Mailer:

  send_customer()  content-safety check first; SafetyRejected if it fails
  send_internal()  warehouse requests and other staff mail; no safety check

The transport itself (Gmail, Graph, SendGrid...) is an external collaborator
implementing EmailTransport. A transport that raises or returns False surfaces
as DeliveryFailed, so callers handle exactly two failure types.
"""
import logging
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from .errors import DeliveryFailed, SafetyRejected
from .safety import SafetyVerdict

logger = logging.getLogger(__name__)


class OutboundEmail(BaseModel):
    to: str
    subject: str
    text: str
    html: str


def to_html(text: str) -> str:
    return text.replace("\n", "<br>")


@runtime_checkable
class EmailTransport(Protocol):
    async def send_email(self, user_id: str, message: OutboundEmail) -> bool: ...

    async def health_check(self, user_id: str) -> bool: ...


class SafetyChecker(Protocol):
    async def check(self, message: str) -> SafetyVerdict: ...


class LoggingTransport:
    """
    Transport that records messages instead of sending them.
    Used by the demo and as the default when no provider is wired.
    """

    def __init__(self):
        self.sent: list[tuple[str, OutboundEmail]] = []

    async def send_email(self, user_id: str, message: OutboundEmail) -> bool:
        self.sent.append((user_id, message))
        logger.info("[mail] to=%s subject=%r", message.to, message.subject)
        return True

    async def health_check(self, user_id: str) -> bool:
        return True


class Mailer:
    def __init__(self, transport: EmailTransport, safety: SafetyChecker):
        self.transport = transport
        self.safety    = safety

    async def send_customer(self, user_id: str, to: str, subject: str, text: str) -> OutboundEmail:
        verdict = await self.safety.check(text)
        if not verdict.allowed:
            logger.warning("[mail] Customer email to %s blocked (%s): %s", to, verdict.decision, verdict.reason)
            raise SafetyRejected(f"Outgoing message rejected by content safety check: {verdict.reason}")
        return await self._deliver(user_id, OutboundEmail(to=to, subject=subject, text=text, html=to_html(text)))

    async def send_internal(self, user_id: str, to: str, subject: str, text: str) -> OutboundEmail:
        return await self._deliver(user_id, OutboundEmail(to=to, subject=subject, text=text, html=to_html(text)))

    async def _deliver(self, user_id: str, message: OutboundEmail) -> OutboundEmail:
        try:
            delivered = await self.transport.send_email(user_id, message)
        except Exception as exc:
            raise DeliveryFailed(f"Email to {message.to} failed: {exc}") from exc
        if not delivered:
            raise DeliveryFailed(f"Email to {message.to} was not accepted by the transport")
        return message

    async def is_healthy(self, user_id: str) -> bool:
        try:
            return bool(await self.transport.health_check(user_id))
        except Exception as exc:
            logger.warning("[mail] Transport health check failed: %s", exc)
            return False
