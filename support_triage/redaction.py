"""PII redaction applied before customer text is sent to a model."""

from __future__ import annotations

import re
from dataclasses import dataclass

EMAIL_PATTERN = re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b")
PHONE_PATTERN = re.compile(
    r"(?<![\d#])(?:\+?\d{1,3}[\s-])?(?:\(\d{2,4}\)\s?|\d{3}[\s.-])\d{3}[\s.-]?\d{4}(?!\d)"
)
CARD_PATTERN = re.compile(r"\b(?:\d[ -]?){13,16}\b")


@dataclass(frozen=True)
class Redacted:
    text: str
    applied: bool


def redact(text: str) -> Redacted:
    """Mask emails, phone numbers and card-like digit runs.

    Order numbers such as ``#10234`` are too short to match and survive, so
    the model can still see them.
    """
    if not text:
        return Redacted(text="", applied=False)
    redacted = EMAIL_PATTERN.sub("[REDACTED_EMAIL]", text)
    redacted = CARD_PATTERN.sub("[REDACTED_CARD]", redacted)
    redacted = PHONE_PATTERN.sub("[REDACTED_PHONE]", redacted)
    return Redacted(text=redacted, applied=redacted != text)
