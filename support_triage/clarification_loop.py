"""Detect threads where the agent keeps asking for the same missing detail."""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .audit import log_exception
from .domain import ClarificationLoopResult

logger = logging.getLogger(__name__)

LOOP_THRESHOLD = 2


def _patterns(*raw: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(item, re.IGNORECASE) for item in raw)


# Declaration order breaks ties between equally repeated categories.
CLARIFICATION_PATTERNS: Dict[str, Tuple[Pattern[str], ...]] = {
    "order_number": _patterns(
        r"order\s*(number|#|info)",
        r"could\s+you\s+(provide|share|send).*order",
        r"what('?s| is)?\s*(your|the)\s*order",
        r"need\s*(your|the|an)?\s*order\s*(number|#)?",
        r"confirm.*order",
        r"which\s*order",
        r"order\s*(#|number)?\s*(please|so\s+I\s+can)",
    ),
    "vehicle_info": _patterns(
        r"what\s*(vehicle|car|truck|year|make|model)",
        r"which\s*(vehicle|car|truck)",
        r"what('?s| is)\s*(your|the)\s*(vehicle|car|truck|year|make|model)",
        r"could\s+you\s+(provide|share|tell).*vehicle",
        r"vehicle\s*(info|information|details)",
        r"year,?\s*make,?\s*(and\s*)?model",
        r"what\s*(kind|type)\s*of\s*(vehicle|car|truck)",
        r"need\s*(your|the)?\s*(vehicle|car|year)",
    ),
    "product_unit_type": _patterns(
        r"which\s*(product|unit|apex|g-series|cluster)",
        r"what\s*(product|unit|type)",
        r"what('?s| is)\s*(your|the)\s*(product|unit)",
        r"could\s+you\s+(provide|share|tell).*unit",
        r"unit\s*(type|model)",
        r"apex\s*(or|vs|versus).*g-series",
        r"which\s*(model|version)",
        r"is\s*it\s*(an?\s*)?(apex|g-series|cluster)",
    ),
    "photos_screenshots": _patterns(
        r"could\s+you\s+(send|share|provide|attach).*photo",
        r"could\s+you\s+(send|share|provide|attach).*screenshot",
        r"could\s+you\s+(send|share|provide|attach).*picture",
        r"could\s+you\s+(send|share|provide|attach).*image",
        r"photo\s*(of|showing)",
        r"screenshot\s*(of|showing)",
        r"picture\s*(of|showing)",
        r"image\s*(of|showing)",
        r"send\s*(me\s*)?(a\s*)?(photo|screenshot|picture)",
        r"attach\s*(a\s*)?(photo|screenshot|picture)",
        r"share\s*(a\s*)?(photo|screenshot|picture)",
    ),
    "error_message": _patterns(
        r"what\s*(error|message)",
        r"what('?s| is)\s*(the|your)\s*error",
        r"could\s+you\s+(provide|share|tell).*error",
        r"what\s*does\s*(the\s*)?(error|message|screen)\s*say",
        r"error\s*(message|code)",
        r"what\s*are\s*you\s*seeing",
        r"what\s*does\s*it\s*say",
        r"describe.*error",
        r"what\s*appears",
        r"share.*error",
    ),
}

CATEGORY_DESCRIPTIONS = {
    "order_number": "order number",
    "vehicle_info": "vehicle information",
    "product_unit_type": "product/unit type",
    "photos_screenshots": "photos or screenshots",
    "error_message": "error message details",
}


def _empty_counts() -> Dict[str, int]:
    return {category: 0 for category in CLARIFICATION_PATTERNS}


def categories_in(text: str) -> List[str]:
    return [
        category
        for category, patterns in CLARIFICATION_PATTERNS.items()
        if any(pattern.search(text) for pattern in patterns)
    ]


def analyse_outbound(bodies: Iterable[Optional[str]], threshold: int = LOOP_THRESHOLD) -> ClarificationLoopResult:
    """Count clarification categories over outbound bodies in chronological order."""
    counts = _empty_counts()
    for body in bodies:
        for category in categories_in(body or ""):
            counts[category] += 1

    repeated: Optional[str] = None
    occurrences = 0
    for category, count in counts.items():
        if count >= threshold and count > occurrences:
            repeated = category
            occurrences = count

    return ClarificationLoopResult(
        loop_detected=repeated is not None,
        repeated_category=repeated,
        occurrences=occurrences,
        category_counts=counts,
    )


def detect_clarification_loop(
    thread_id: str,
    fetch_outbound: Callable[[str], Sequence[Optional[str]]],
    threshold: int = LOOP_THRESHOLD,
) -> ClarificationLoopResult:
    """Fetch a thread's outbound history and look for a loop; never raises."""
    try:
        bodies = fetch_outbound(thread_id)
    except Exception as exc:  # a broken history lookup must not block triage
        logger.warning(
            "clarification loop lookup failed; assuming no loop",
            extra={"extra_data": {"thread_id": thread_id, "error": type(exc).__name__}},
        )
        log_exception("clarification_loop.lookup_failed", error=exc, thread_id=thread_id)
        return ClarificationLoopResult(loop_detected=False, category_counts=_empty_counts())

    if not bodies:
        return ClarificationLoopResult(loop_detected=False, category_counts=_empty_counts())

    result = analyse_outbound(bodies, threshold)
    if result.loop_detected:
        logger.info(
            "clarification loop detected",
            extra={
                "extra_data": {
                    "thread_id": thread_id,
                    "category": result.repeated_category,
                    "occurrences": result.occurrences,
                }
            },
        )
    return result
