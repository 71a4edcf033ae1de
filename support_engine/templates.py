"""
Message Templates
=================
Customer and warehouse texts for both request kinds.

The workflow is the same for cancellation and address change; only the words
differ. Every function returns a Message(subject, text). HTML rendering is the
mailer's job.
"""
from typing import NamedTuple

from .models import Address, RequestKind


class Message(NamedTuple):
    subject: str
    text: str


FOOTER = '- Automated for expediency. Reply "human" at any time to reach a person.'

_NOUN = {
    RequestKind.CANCELLATION:   "cancellation",
    RequestKind.ADDRESS_CHANGE: "address change",
}


def _address_block(address: Address | None) -> str:
    if address is None:
        return ""
    return "\n".join(f"  {line}" for line in address.lines())


def acknowledgment(kind: RequestKind, order_number: str) -> Message:
    if kind is RequestKind.CANCELLATION:
        return Message(
            "We're on it - your cancellation request",
            "We received your cancellation request and are checking with the warehouse to stop "
            "the order before it ships. We'll update you as soon as we hear back.\n\n" + FOOTER,
        )
    return Message(
        f"Order #{order_number} - address change request received",
        f"We've received your request to change the shipping address for Order #{order_number}.\n\n"
        "We're checking with our fulfillment team now and will confirm as soon as the change "
        "is made.\n\n" + FOOTER,
    )


def warehouse_request(
    kind: RequestKind,
    order_number: str,
    new_address: Address | None = None,
    test_mode: bool = False,
) -> Message:
    prefix = "[TEST] " if test_mode else ""
    if kind is RequestKind.CANCELLATION:
        return Message(
            f"{prefix}URGENT: Cancel Order #{order_number}",
            f"Please cancel Order #{order_number} if it has not been picked or shipped. "
            "Reply 'Canceled' or 'Cannot cancel'.",
        )
    return Message(
        f"{prefix}URGENT: Update Address for Order #{order_number}",
        f"Please update the shipping address for Order #{order_number} if it has not been "
        f"picked or shipped. New address:\n\n{_address_block(new_address)}\n\n"
        "Reply 'Updated' or 'Cannot update'.",
    )


def time_window_rejection(kind: RequestKind, order_number: str) -> Message:
    noun = _NOUN[kind]
    return Message(
        f"Order #{order_number} - {noun} not possible",
        f"We received your {noun} request for Order #{order_number}. Unfortunately, this order "
        f"was placed outside our {noun} window and has likely already been processed for "
        "shipping.\n\n" + _follow_up(kind) + "\n\n" + FOOTER,
    )


def backend_rejection(kind: RequestKind, order_number: str) -> Message:
    noun = _NOUN[kind]
    what = "cannot be canceled" if kind is RequestKind.CANCELLATION else "the address cannot be changed"
    return Message(
        f"Order #{order_number} - {noun} not possible",
        f"We received your {noun} request for Order #{order_number}. Unfortunately, this order "
        f"has already been processed by our fulfillment center and {what}.\n\n"
        + _follow_up(kind) + "\n\n" + FOOTER,
    )


def _follow_up(kind: RequestKind) -> str:
    if kind is RequestKind.CANCELLATION:
        return ("If you'd like to initiate a return once you receive your order, please reply to "
                "this email and we'll help you get that started.")
    return ("If the package needs to be redirected, please reply to this email and we'll help "
            "you with the carrier.")


def success(
    kind: RequestKind,
    order_number: str,
    refund_amount: float | None = None,
    new_address: Address | None = None,
) -> Message:
    if kind is RequestKind.CANCELLATION:
        amount = f" of ${refund_amount:.2f}" if refund_amount else ""
        return Message(
            f"Order #{order_number} canceled and refunded",
            f"Good news - we caught your order in time. We've canceled Order #{order_number} and "
            f"issued a refund{amount} to your original payment method.\n\n" + FOOTER,
        )
    block = _address_block(new_address)
    where = f" Your order will now ship to:\n\n{block}" if block else ""
    return Message(
        f"Order #{order_number} - shipping address updated successfully",
        f"Great news! We've successfully updated the shipping address for your Order "
        f"#{order_number}.{where}\n\n" + FOOTER,
    )


def failure(kind: RequestKind, order_number: str) -> Message:
    if kind is RequestKind.CANCELLATION:
        return Message(
            f"Order #{order_number} - cancellation attempt result",
            "We weren't able to retrieve your order before it shipped. If you'd like to initiate "
            "a return, reply to this email and we'll help.\n\n" + FOOTER,
        )
    return Message(
        f"Order #{order_number} - address change unsuccessful",
        f"We attempted to update the shipping address for your Order #{order_number}, but "
        "unfortunately it was not possible at this time because the order had already been "
        "processed.\n\n" + _follow_up(kind) + "\n\n" + FOOTER,
    )


def proposed_acknowledgment(kind: RequestKind, order_number: str) -> str:
    """Draft shown to the approver; it is sent verbatim at the acknowledgment step."""
    noun = _NOUN[kind]
    return (
        f"Hi there,\n\nWe received your {noun} request for Order #{order_number} and are "
        "working with our fulfillment team on it right now.\n\n"
        "We'll update you shortly with the results."
        + (" If we can't stop the shipment in time, we'll help you set up a return instead."
           if kind is RequestKind.CANCELLATION else "")
        + "\n\nBest regards,\nCustomer Service Team"
    )


def review_placeholder(category: str) -> str:
    """Draft for a review item when no grounded answer could be produced."""
    return (
        f"[No draft available - {category.replace('_', ' ')} request needs a reply written by the reviewer]\n\n"
        "Hi there,\n\nThanks for reaching out. "
    )
