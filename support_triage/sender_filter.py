"""Decide whether an inbound message came from a machine rather than a person.

Runs before classification so platform notifications never cost a model call.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .config import TriageSettings, bare_address

AUTOMATED_LOCAL_PARTS = re.compile(
    r"^(no[-_.]?reply|do[-_.]?not[-_.]?reply|mailer[-_.]?daemon|postmaster|bounces?|"
    r"notifications?|alerts?|automated|auto[-_.]?confirm|system)([-+._].*)?$",
    re.IGNORECASE,
)

AUTOMATED_DOMAINS = (
    "facebookmail.com",
    "accounts.google.com",
    "google.com",
    "tiktok.com",
    "linkedin.com",
    "amazonses.com",
    "sendgrid.net",
    "mailchimp.com",
    "shopify.com",
    "paypal.com",
    "stripe.com",
)

AUTOMATED_SUBJECTS = (
    re.compile(r"^\s*(auto(matic)?[- ]?reply|out of (the )?office)\b", re.IGNORECASE),
    re.compile(r"\bdelivery status notification\b", re.IGNORECASE),
    re.compile(r"\b(undeliverable|mail delivery (failed|subsystem))\b", re.IGNORECASE),
    re.compile(r"\b(security alert|verify your (email|account)|password reset)\b", re.IGNORECASE),
    re.compile(r"\byour (weekly|monthly|daily) (report|summary|digest)\b", re.IGNORECASE),
    re.compile(r"\b(payout|invoice|receipt) (is )?(available|ready)\b", re.IGNORECASE),
)

BULK_PRECEDENCE = frozenset({"bulk", "list", "junk", "auto_reply"})


@dataclass(frozen=True)
class SenderFilterResult:
    automated: bool
    rule: Optional[str] = None


def _domain_matches(domain: str, candidate: str) -> bool:
    return domain == candidate or domain.endswith("." + candidate)


def _header(metadata: Mapping[str, Any], name: str) -> str:
    for key in (name, name.lower(), name.replace("-", "_").lower()):
        value = metadata.get(key)
        if value:
            return str(value).strip().lower()
    return ""


def check_sender(
    from_identifier: Optional[str],
    subject: Optional[str],
    metadata: Optional[Mapping[str, Any]] = None,
    settings: Optional[TriageSettings] = None,
) -> SenderFilterResult:
    """Return whether the message is automated and which rule matched.

    Trusted and internal senders are never treated as automated.
    """

    if settings is not None and settings.is_internal_sender(from_identifier):
        return SenderFilterResult(automated=False)

    metadata = metadata or {}
    auto_submitted = _header(metadata, "Auto-Submitted")
    if auto_submitted and auto_submitted != "no":
        return SenderFilterResult(automated=True, rule="header:auto-submitted")
    if _header(metadata, "Precedence") in BULK_PRECEDENCE:
        return SenderFilterResult(automated=True, rule="header:precedence")

    address = bare_address(from_identifier or "")
    if "@" in address:
        local, domain = address.rsplit("@", 1)
        if AUTOMATED_LOCAL_PARTS.match(local):
            return SenderFilterResult(automated=True, rule=f"sender:{local}")
        for candidate in AUTOMATED_DOMAINS:
            if _domain_matches(domain, candidate):
                return SenderFilterResult(automated=True, rule=f"domain:{candidate}")

    for pattern in AUTOMATED_SUBJECTS:
        if subject and pattern.search(subject):
            return SenderFilterResult(automated=True, rule=f"subject:{pattern.pattern}")

    return SenderFilterResult(automated=False)


def is_automated(
    from_identifier: Optional[str],
    subject: Optional[str],
    metadata: Optional[Mapping[str, Any]] = None,
    settings: Optional[TriageSettings] = None,
) -> bool:
    return check_sender(from_identifier, subject, metadata, settings).automated
