"""
Order Reference & Address Extraction
====================================
Pulls the target order number and, for address changes, the new shipping
address out of a free-text customer email.

Order number:
  1. Regex first: "#1001", "order 1001", "order number #1001" (4+ digits).
  2. DSPy fallback (ExtractOrderReference) when no pattern matches; the model
     answers with a bare number or NONE.
  The caller falls back to "most recent order for this email" when both miss.

Address:
  Heuristic patterns ("new address: ...", "ship to ...", "deliver to ...")
  followed by a comma split into street / city / "STATE ZIP". No LLM involved;
  an address we cannot read is a validation failure the human will see.
"""
import asyncio
import logging
import re

import dspy

from .models import Address

logger = logging.getLogger(__name__)

ORDER_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"order\s*number\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"order\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"#(\d{4,})"),
)


def extract_order_number_regex(text: str) -> str | None:
    for pattern in ORDER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


class ExtractOrderReference(dspy.Signature):
    """
    Find the order number a customer is referring to in a support email.

    Order numbers are numeric, usually 4 or more digits, and may be written as
    "#1234", "order 1234", "my order number is 1234" or spelled inside a
    sentence. Ignore phone numbers, ZIP codes, prices and dates.

    If no order number is present, answer exactly NONE.
    """
    message: str = dspy.InputField(desc="Subject and body of the customer email")
    order_number: str = dspy.OutputField(desc="The digits of the order number only, or NONE")


_predict: dspy.Predict | None = None


def _get_predict() -> dspy.Predict:
    global _predict
    if _predict is None:
        _predict = dspy.Predict(ExtractOrderReference)
    return _predict


def _normalize_answer(answer: str | None) -> str | None:
    if not answer:
        return None
    cleaned = answer.strip()
    if cleaned.upper().startswith("NONE"):
        return None
    digits = re.search(r"\d{4,}", cleaned)
    return digits.group(0) if digits else None


class OrderNumberExtractor:
    """Regex first, model second. `use_model=False` disables the fallback."""

    def __init__(self, use_model: bool = True):
        self.use_model = use_model

    async def extract(self, subject: str, body: str) -> str | None:
        text = f"{subject}\n{body}"
        found = extract_order_number_regex(text)
        if found:
            logger.info("[extraction] Order #%s found by pattern", found)
            return found

        if not self.use_model:
            return None

        try:
            result = await asyncio.to_thread(_get_predict(), message=text)
        except Exception as exc:
            logger.warning("[extraction] Model extraction failed: %s", exc)
            return None

        found = _normalize_answer(getattr(result, "order_number", None))
        logger.info("[extraction] Model extraction result: %s", found or "NONE")
        return found


# ── Address ─────────────────────────────────────────────────────────────────

ADDRESS_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"new\s+(?:shipping\s+)?address\s*(?:is)?[:\s]+([^\n\r]+)", re.IGNORECASE),
    re.compile(r"change\b.*\baddress\b.*?\bto[:\s]+([^\n\r]+)", re.IGNORECASE),
    re.compile(r"ship(?:ped)?\s+(?:it\s+)?to[:\s]+([^\n\r]+)", re.IGNORECASE),
    re.compile(r"deliver(?:ed)?\s+(?:it\s+)?to[:\s]+([^\n\r]+)", re.IGNORECASE),
)

STATE_ZIP = re.compile(r"^([A-Za-z]{2})\s+(\d{5}(?:-\d{4})?)$")
ZIP       = re.compile(r"\b(\d{5}(?:-\d{4})?)\b")
STREET    = re.compile(r"\d+\s+\w+")


def extract_address(text: str) -> Address | None:
    """
    Parse a new shipping address out of an address-change email.

    Understands "123 Main St, Springfield, IL 62701" and a trailing country
    segment. Returns None when no line that looks like a street is found.
    """
    candidate = None
    for pattern in ADDRESS_PATTERNS:
        match = pattern.search(text)
        if match and STREET.search(match.group(1)):
            candidate = match.group(1).strip().rstrip(".")
            break
    if candidate is None:
        return None

    parts = [p.strip() for p in candidate.split(",") if p.strip()]
    address = {"line1": parts[0]}

    rest = parts[1:]
    if rest and not STATE_ZIP.match(rest[0]):
        address["city"] = rest.pop(0)
    if rest:
        state_zip = STATE_ZIP.match(rest[0])
        if state_zip:
            address["state"], address["postal_code"] = state_zip.group(1).upper(), state_zip.group(2)
            rest.pop(0)
    if rest:
        address["country"] = rest[-1]

    if "postal_code" not in address and len(parts) > 1:
        zip_match = ZIP.search(parts[-1])
        if zip_match:
            address["postal_code"] = zip_match.group(1)

    return Address(**address)
