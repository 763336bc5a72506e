"""Merge a fresh classification into a thread's accumulated intents."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from .config import TriageSettings
from .domain import ClassificationResult, IntentScore, rank_intents
from .intents import SPAM_INTENTS, UNKNOWN, intent_config


@dataclass(frozen=True)
class IntegrationResult:
    classification: ClassificationResult
    thread_intents: Tuple[str, ...]
    added: Tuple[str, ...] = ()
    clarified_to: Tuple[str, ...] = ()
    spam_override: bool = False

    @property
    def intent_clarified(self) -> bool:
        return bool(self.clarified_to)


def apply_sender_overrides(
    classification: ClassificationResult,
    sender: Optional[str],
    settings: TriageSettings,
) -> Tuple[ClassificationResult, bool]:
    """Internal senders are never spam: downgrade any spam label to UNKNOWN."""
    if not settings.is_internal_sender(sender):
        return classification, False
    if not any(score.slug in SPAM_INTENTS for score in classification.intents):
        return classification, False

    downgraded: List[IntentScore] = []
    for score in classification.intents:
        if score.slug in SPAM_INTENTS:
            score = IntentScore(UNKNOWN, score.confidence, "Internal sender cannot be spam")
        if any(existing.slug == score.slug for existing in downgraded):
            continue
        downgraded.append(score)

    ranked = rank_intents(downgraded)
    primary = intent_config(ranked[0].slug)
    updated = replace(
        classification,
        intents=ranked,
        requires_verification=primary.requires_verification,
        auto_escalate=primary.auto_escalate,
    )
    return updated, True


def integrate(
    classification: ClassificationResult,
    thread_intents: Sequence[str],
    sender: Optional[str],
    settings: TriageSettings,
) -> IntegrationResult:
    """Apply overrides, then fold qualifying intents into the thread's set.

    When the thread's only recorded intent was UNKNOWN and a real intent now
    clears the confidence floor, UNKNOWN is dropped and ``clarified_to``
    lists the intents that replaced it.
    """

    classification, overridden = apply_sender_overrides(classification, sender, settings)

    existing = list(dict.fromkeys(thread_intents))
    qualifying = [
        score.slug for score in classification.intents if score.confidence >= settings.confidence_floor
    ]
    only_unknown = existing == [UNKNOWN]
    real = [slug for slug in qualifying if slug != UNKNOWN]

    added: List[str] = []
    for slug in qualifying:
        if slug not in existing:
            existing.append(slug)
            added.append(slug)

    clarified: Tuple[str, ...] = ()
    if only_unknown and real:
        existing = [slug for slug in existing if slug != UNKNOWN]
        clarified = tuple(dict.fromkeys(real))

    return IntegrationResult(
        classification=classification,
        thread_intents=tuple(existing),
        added=tuple(added),
        clarified_to=clarified,
        spam_override=overridden,
    )
