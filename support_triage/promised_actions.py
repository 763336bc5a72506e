"""Find commitment-like phrases in draft text for the audit trail.

Detection never blocks anything; the orchestrator records what it finds as a
``PROMISED_ACTION`` event so operators can review what was promised.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from .domain import DetectedPromise, PromiseCategory

_WILL = r"(?:will|going to|we'll|i'll)"
_I_HAVE = r"i(?:'ve|'m|\s+have)"

DRAFT_SNIPPET_LIMIT = 500


def _rule(pattern: str, category: PromiseCategory, description: str) -> Tuple[Pattern[str], PromiseCategory, str]:
    return re.compile(pattern, re.IGNORECASE), category, description


PROMISE_PATTERNS = (
    _rule(r"\brefund(?:ed|s)?\s+(?:has been\s+)?approved\b", PromiseCategory.REFUND, "Refund approved"),
    _rule(rf"\b{_WILL}\s+(?:process|issue)\s+(?:your\s+)?refund\b", PromiseCategory.REFUND, "Will process refund"),
    _rule(rf"\b{_WILL}\s+refund\b", PromiseCategory.REFUND, "Will refund"),
    _rule(r"\bprocess(?:ing|ed)?\s+(?:your\s+)?refund\b", PromiseCategory.REFUND, "Processing refund"),
    _rule(rf"\b{_I_HAVE}\s+(?:issued|processed|approved)\s+(?:a\s+|the\s+)?refund\b", PromiseCategory.REFUND, "Refund issued/processed"),
    _rule(rf"\b{_WILL}\s+ship\b", PromiseCategory.SHIPPING, "Will ship"),
    _rule(rf"\b{_WILL}\s+send\b", PromiseCategory.SHIPPING, "Will send"),
    _rule(r"\bshipping\s+(?:today|tomorrow|this week|within)\b", PromiseCategory.SHIPPING, "Shipping timeline commitment"),
    _rule(r"\b(?:will\s+)?(?:be\s+)?shipped?\s+(?:out\s+)?(?:today|tomorrow|this week)\b", PromiseCategory.SHIPPING, "Shipping today/tomorrow"),
    _rule(r"\byou(?:'ll| will)\s+receive\s+(?:it\s+)?(?:by|within|in)\b", PromiseCategory.SHIPPING, "Delivery timeline commitment"),
    _rule(r"\bexpect\s+(?:delivery|it|your order)\s+(?:by|within|in)\b", PromiseCategory.SHIPPING, "Expected delivery timeline"),
    _rule(rf"\b{_WILL}\s+(?:send\s+(?:a|you)\s+)?replace(?:ment)?\b", PromiseCategory.REPLACEMENT, "Will send replacement"),
    _rule(r"\breplacement\s+(?:has been\s+)?(?:approved|confirmed)\b", PromiseCategory.REPLACEMENT, "Replacement approved"),
    _rule(r"\b(?:send(?:ing)?|ship(?:ping)?)\s+(?:a\s+)?(?:new\s+)?replacement\b", PromiseCategory.REPLACEMENT, "Sending replacement"),
    _rule(rf"\b{_I_HAVE}\s+(?:arranged|approved|processed)\s+a\s+replacement\b", PromiseCategory.REPLACEMENT, "Replacement arranged"),
    _rule(rf"\b{_WILL}\s+(?:follow\s+up|get\s+back\s+to\s+you)\b", PromiseCategory.FOLLOW_UP, "Will follow up"),
    _rule(rf"\b{_WILL}\s+(?:check|look\s+into|investigate)\s+(?:on\s+)?this\b", PromiseCategory.FOLLOW_UP, "Will investigate"),
    _rule(rf"\b{_WILL}\s+escalate\b", PromiseCategory.FOLLOW_UP, "Will escalate"),
    _rule(rf"\b{_WILL}\s+(?:reach\s+out|contact)\b", PromiseCategory.FOLLOW_UP, "Will contact"),
    _rule(r"\bexpect\s+(?:a\s+)?(?:response|reply|update)\s+(?:within|by)\b", PromiseCategory.FOLLOW_UP, "Response timeline commitment"),
    _rule(rf"\b{_I_HAVE}\s+confirmed\b", PromiseCategory.CONFIRMATION, "Confirmed action"),
    _rule(r"\b(?:has been|is now)\s+(?:approved|confirmed|processed)\b", PromiseCategory.CONFIRMATION, "Action approved/confirmed"),
    _rule(rf"\b{_I_HAVE}\s+(?:processed|completed|updated)\b", PromiseCategory.CONFIRMATION, "Action processed/completed"),
    _rule(r"\byour\s+(?:request|order|return)\s+(?:has been|is)\s+(?:approved|confirmed)\b", PromiseCategory.CONFIRMATION, "Request approved"),
    _rule(r"\bwithin\s+(?:\d+|one|two|three|24|48|72)\s+(?:hours?|days?|business\s+days?)\b", PromiseCategory.TIMELINE, "Timeline commitment"),
    _rule(r"\bby\s+(?:end\s+of\s+)?(?:today|tomorrow|this\s+week|monday|tuesday|wednesday|thursday|friday)\b", PromiseCategory.TIMELINE, "Deadline commitment"),
)


def detect_promised_actions(draft_text: Optional[str]) -> List[DetectedPromise]:
    """Return the first match of every distinct promise description in ``draft_text``."""
    if not draft_text or not draft_text.strip():
        return []

    detected: List[DetectedPromise] = []
    seen = set()
    for pattern, category, description in PROMISE_PATTERNS:
        if description in seen:
            continue
        match = pattern.search(draft_text)
        if match:
            seen.add(description)
            detected.append(DetectedPromise(category=category, phrase=match.group(0), description=description))
    return detected


def draft_snippet(draft_text: Optional[str]) -> Optional[str]:
    if not draft_text:
        return None
    if len(draft_text) > DRAFT_SNIPPET_LIMIT:
        return draft_text[:DRAFT_SNIPPET_LIMIT] + "..."
    return draft_text


def summarise_promises(promises: Sequence[DetectedPromise]) -> Dict[str, Any]:
    categories: List[str] = []
    for promise in promises:
        if promise.category.value not in categories:
            categories.append(promise.category.value)
    return {
        "promises": [
            {"category": p.category.value, "matched_text": p.phrase, "description": p.description}
            for p in promises
        ],
        "promise_count": len(promises),
        "categories": categories,
    }
