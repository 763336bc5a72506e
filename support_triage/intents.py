"""Intent taxonomy and the required-information checklist per intent."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern, Tuple

from .domain import MissingInfo

UNKNOWN = "UNKNOWN"
THANK_YOU_CLOSE = "THANK_YOU_CLOSE"
VENDOR_SPAM = "VENDOR_SPAM"
AUTOMATED_EMAIL = "AUTOMATED_EMAIL"
CHARGEBACK_THREAT = "CHARGEBACK_THREAT"
LEGAL_SAFETY_RISK = "LEGAL_SAFETY_RISK"

# Intents that close a thread outright.
CLOSING_INTENTS = frozenset({THANK_YOU_CLOSE, VENDOR_SPAM, AUTOMATED_EMAIL})
NON_ACTIONABLE_INTENTS = frozenset({VENDOR_SPAM, AUTOMATED_EMAIL})
HIGH_RISK_INTENTS = frozenset({CHARGEBACK_THREAT, LEGAL_SAFETY_RISK})
SPAM_INTENTS = frozenset({VENDOR_SPAM})


@dataclass(frozen=True)
class IntentConfig:
    slug: str
    description: str
    requires_verification: bool = False
    auto_escalate: bool = False


@dataclass(frozen=True)
class RequiredField:
    """A piece of information an intent needs before it can be answered.

    ``satisfied_by`` names the verified data (``order``/``customer``) that
    supplies this field once verification succeeds; an empty tuple means
    only the customer can provide it.
    """

    id: str
    label: str
    patterns: Tuple[Pattern[str], ...]
    required: bool
    satisfied_by: Tuple[str, ...] = ()

    def present_in(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


INTENT_CATALOG: Dict[str, IntentConfig] = {
    entry.slug: entry
    for entry in (
        IntentConfig("PRODUCT_SUPPORT", "General product troubleshooting (screen dead, audio issues, not working)", requires_verification=True),
        IntentConfig("FIRMWARE_UPDATE_REQUEST", "Requesting firmware files or update access", requires_verification=True),
        IntentConfig("FIRMWARE_ACCESS_ISSUE", "Problems accessing or downloading firmware", requires_verification=True),
        IntentConfig("DOCS_VIDEO_MISMATCH", "Install docs or videos don't match the product received"),
        IntentConfig("INSTALL_GUIDANCE", "How-to install questions", requires_verification=True),
        IntentConfig("FUNCTIONALITY_BUG", "Product not working as expected", requires_verification=True),
        IntentConfig("COMPATIBILITY_QUESTION", "Will this product work with a given vehicle"),
        IntentConfig("PART_IDENTIFICATION", "Which part is this, or which part is needed"),
        IntentConfig("ORDER_STATUS", "Where is my order, tracking questions", requires_verification=True),
        IntentConfig("ORDER_CHANGE_REQUEST", "Cancel or modify an order", requires_verification=True),
        IntentConfig("MISSING_DAMAGED_ITEM", "Item missing or arrived damaged", requires_verification=True),
        IntentConfig("WRONG_ITEM_RECEIVED", "Received an incorrect product", requires_verification=True),
        IntentConfig("RETURN_REFUND_REQUEST", "Wants to return an item or get a refund", requires_verification=True),
        IntentConfig(CHARGEBACK_THREAT, "Threatening a chargeback or payment dispute"),
        IntentConfig(LEGAL_SAFETY_RISK, "Legal threats or safety concerns", auto_escalate=True),
        IntentConfig(THANK_YOU_CLOSE, "Customer saying thanks and closing the thread"),
        IntentConfig("FOLLOW_UP_NO_NEW_INFO", "Follow-up with no new information"),
        IntentConfig(VENDOR_SPAM, "Sales pitches, partnerships, vendor inquiries"),
        IntentConfig(AUTOMATED_EMAIL, "Automated service or platform notifications"),
        IntentConfig(UNKNOWN, "Could not be classified"),
    )
}


def intent_config(slug: str) -> IntentConfig:
    return INTENT_CATALOG.get(slug) or INTENT_CATALOG[UNKNOWN]


def is_known_intent(slug: str) -> bool:
    return slug in INTENT_CATALOG


def _p(*patterns: str, flags: int = re.IGNORECASE) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, flags) for pattern in patterns)


# Order identifiers appear as "order #1234", bare 4+ digit numbers or
# uppercase alphanumeric codes; the last one must stay case-sensitive.
_ORDER_NUMBER_PATTERNS = _p(r"order\s*#?\s*\d+", r"\b#?\d{4,}\b") + _p(r"\b[A-Z0-9]{6,}\b", flags=0)
_ORDER_INFO_PATTERNS = _p(r"order\s*#?\s*\d+", r"@[a-z0-9.-]+\.[a-z]{2,}") + _p(r"\b[A-Z0-9]{6,}\b", flags=0)
_UNIT_TYPE_PATTERNS = _p(r"\bapex\b", r"\bg-series\b", r"\bgseries\b", r"\bcluster\b")


def _order_number() -> RequiredField:
    return RequiredField("order_number", "Order number", _ORDER_NUMBER_PATTERNS, True, ("order",))


def _order_info() -> RequiredField:
    return RequiredField("order_info", "Order number or email", _ORDER_INFO_PATTERNS, False, ("order", "customer"))


def _unit_type() -> RequiredField:
    return RequiredField("unit_type", "Unit type (Apex/G-Series/Cluster)", _UNIT_TYPE_PATTERNS, True)


INTENT_REQUIREMENTS: Dict[str, Tuple[RequiredField, ...]] = {
    "FIRMWARE_UPDATE_REQUEST": (_unit_type(), _order_info()),
    "FIRMWARE_ACCESS_ISSUE": (
        _unit_type(),
        RequiredField(
            "error_description",
            "Error description",
            _p(r"error", r"message", r"says", r"shows", r"screen", r"page"),
            False,
        ),
        _order_info(),
    ),
    "ORDER_STATUS": (_order_number(),),
    "ORDER_CHANGE_REQUEST": (
        _order_number(),
        RequiredField("change_details", "What to change", _p(r"change", r"cancel", r"modify", r"address", r"shipping"), True),
    ),
    "MISSING_DAMAGED_ITEM": (
        _order_number(),
        RequiredField(
            "item_description",
            "Which item is missing/damaged",
            _p(r"missing", r"damaged", r"broken", r"item", r"part", r"box"),
            True,
        ),
    ),
    "WRONG_ITEM_RECEIVED": (
        _order_number(),
        RequiredField("wrong_item", "What was received", _p(r"received", r"got", r"sent", r"wrong"), True),
        RequiredField("expected_item", "What was expected", _p(r"ordered", r"expected", r"supposed", r"should"), False),
    ),
    "PART_IDENTIFICATION": (
        RequiredField(
            "part_number",
            "Part number or description",
            _p(r"\b\d{3,5}\b", r"part\s*#?\s*\w+", r"labeled", r"says"),
            True,
        ),
    ),
    "RETURN_REFUND_REQUEST": (
        _order_number(),
        RequiredField(
            "reason",
            "Reason for return/refund",
            _p(r"because", r"reason", r"defective", r"doesn't work", r"not working", r"changed my mind"),
            False,
        ),
    ),
    "COMPATIBILITY_QUESTION": (
        RequiredField("product", "Which product", _p(r"\bapex\b", r"\bg-series\b", r"\bcluster\b", r"\bunit\b", r"\bgauge\b"), True),
        RequiredField(
            "vehicle",
            "Vehicle info",
            _p(r"\b\d{4}\b", r"\b(ford|chevy|chevrolet|gmc|dodge|toyota|honda)\b", r"truck", r"car"),
            False,
        ),
    ),
}


def required_fields(slug: str) -> Tuple[RequiredField, ...]:
    return INTENT_REQUIREMENTS.get(slug, ())


def field_by_id(slug: str, field_id: str) -> RequiredField | None:
    for item in required_fields(slug):
        if item.id == field_id:
            return item
    return None


def check_required_info(slug: str, text: str) -> Tuple[MissingInfo, ...]:
    """Return the fields for ``slug`` that ``text`` does not supply, in catalog order."""
    missing: List[MissingInfo] = []
    for item in required_fields(slug):
        if not item.present_in(text):
            missing.append(MissingInfo(id=item.id, label=item.label, required=item.required))
    return tuple(missing)
