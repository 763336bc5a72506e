"""Reject draft text that makes commitments a human has not approved."""

from __future__ import annotations

import re
from typing import List, Pattern, Sequence, Tuple

from .config import TriageSettings
from .domain import PolicyGateResult

BANNED_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"\bwe guarantee\b", re.IGNORECASE), "Contains 'we guarantee'"),
    (re.compile(r"\bi guarantee\b", re.IGNORECASE), "Contains 'I guarantee'"),
    (re.compile(r"\bwill refund\b", re.IGNORECASE), "Promises a refund"),
    (re.compile(r"\bwe will refund\b", re.IGNORECASE), "Promises a refund ('we will refund')"),
    (re.compile(r"\bwill replace\b", re.IGNORECASE), "Promises a replacement"),
    (re.compile(r"\bwe will replace\b", re.IGNORECASE), "Promises a replacement ('we will replace')"),
    (re.compile(r"\bwill ship (today|tomorrow)\b", re.IGNORECASE), "Promises a ship date"),
    (re.compile(r"\byou will receive by\b", re.IGNORECASE), "Promises a delivery date"),
)

DASHES = "-–—"
# A generic team name only counts as a sign-off after a dash or alone on its line.
GENERIC_SIGNOFF = re.compile(
    rf"[{DASHES}]\s*The\s+(Team|Support)\b|^\s*The\s+(Support\s+)?(Team|Support)\s*$",
    re.IGNORECASE | re.MULTILINE,
)


def _signer_patterns(disallowed_signers: Sequence[str]) -> List[Tuple[Pattern[str], str]]:
    patterns = []
    for name in disallowed_signers:
        if not name:
            continue
        escaped = re.escape(name)
        patterns.append((re.compile(rf"[{DASHES}]\s*{escaped}\b|^\s*{escaped}\s*$", re.IGNORECASE | re.MULTILINE), name.title()))
    return patterns


def check_draft(
    text: str,
    *,
    signature_name: str = "Lina",
    disallowed_signers: Sequence[str] = ("rob", "robert"),
) -> PolicyGateResult:
    """Scan ``text`` and return pass/fail with every violated rule.

    Empty text has nothing to sign and skips the signature rule.
    """

    reasons: List[str] = []
    body = text or ""
    for pattern, description in BANNED_PATTERNS:
        if pattern.search(body):
            reasons.append(f"Banned language: {description}")

    for pattern, name in _signer_patterns(disallowed_signers):
        if pattern.search(body):
            reasons.append(f"Disallowed sign-off: {name}")
    if GENERIC_SIGNOFF.search(body):
        reasons.append("Disallowed sign-off: generic team signature")

    if body.strip():
        valid_signature = re.compile(rf"[{DASHES}]\s*{re.escape(signature_name)}\s*$", re.IGNORECASE)
        if not valid_signature.search(body.rstrip()):
            reasons.append(f"Draft must end with '– {signature_name}' signature")

    return PolicyGateResult(ok=not reasons, reasons=tuple(reasons))


def check_with_settings(text: str, settings: TriageSettings) -> PolicyGateResult:
    return check_draft(
        text,
        signature_name=settings.signature_name,
        disallowed_signers=settings.disallowed_signers,
    )
