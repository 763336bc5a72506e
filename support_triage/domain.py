"""Core value types shared by the triage pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ThreadState(str, Enum):
    NEW = "NEW"
    AWAITING_INFO = "AWAITING_INFO"
    IN_PROGRESS = "IN_PROGRESS"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class Action(str, Enum):
    NO_REPLY = "NO_REPLY"
    ASK_CLARIFYING_QUESTIONS = "ASK_CLARIFYING_QUESTIONS"
    SEND_PREAPPROVED_MACRO = "SEND_PREAPPROVED_MACRO"
    ESCALATE_WITH_DRAFT = "ESCALATE_WITH_DRAFT"
    ESCALATE = "ESCALATE"


ESCALATION_ACTIONS = frozenset({Action.ESCALATE, Action.ESCALATE_WITH_DRAFT})
SENDABLE_ACTIONS = frozenset({Action.ASK_CLARIFYING_QUESTIONS, Action.SEND_PREAPPROVED_MACRO})


@dataclass(frozen=True)
class IntentScore:
    slug: str
    confidence: float
    reasoning: str = ""


@dataclass(frozen=True)
class MissingInfo:
    id: str
    label: str
    required: bool


@dataclass(frozen=True)
class ClassificationResult:
    """Ranked intents plus the gating facts derived from the primary one.

    ``degraded`` marks a stand-in produced because the classifier failed or
    is not configured; such a result routes the thread to a human.
    """

    intents: Tuple[IntentScore, ...]
    requires_verification: bool = False
    auto_escalate: bool = False
    missing_info: Tuple[MissingInfo, ...] = ()
    degraded: bool = False

    @property
    def primary_intent(self) -> str:
        return self.intents[0].slug if self.intents else "UNKNOWN"

    @property
    def confidence(self) -> float:
        return self.intents[0].confidence if self.intents else 0.0

    @property
    def can_proceed(self) -> bool:
        return not self.missing_required

    @property
    def missing_required(self) -> Tuple[MissingInfo, ...]:
        return tuple(item for item in self.missing_info if item.required)

    def with_missing_info(self, missing_info: Tuple[MissingInfo, ...]) -> "ClassificationResult":
        return replace(self, missing_info=missing_info)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intents": [
                {"slug": item.slug, "confidence": item.confidence, "reasoning": item.reasoning}
                for item in self.intents
            ],
            "primary_intent": self.primary_intent,
            "requires_verification": self.requires_verification,
            "auto_escalate": self.auto_escalate,
            "missing_info": [
                {"id": item.id, "label": item.label, "required": item.required} for item in self.missing_info
            ],
            "can_proceed": self.can_proceed,
            "degraded": self.degraded,
        }


def rank_intents(intents: List[IntentScore]) -> Tuple[IntentScore, ...]:
    # sorted() is stable, so ties keep first-seen order.
    return tuple(sorted(intents, key=lambda item: item.confidence, reverse=True))


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    PENDING = "pending"
    FLAGGED = "flagged"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    order: Optional[Dict[str, Any]] = None
    customer: Optional[Dict[str, Any]] = None
    flags: Tuple[str, ...] = ()
    reason: str = ""


class PromiseCategory(str, Enum):
    REFUND = "refund"
    SHIPPING = "shipping"
    REPLACEMENT = "replacement"
    FOLLOW_UP = "follow_up"
    CONFIRMATION = "confirmation"
    TIMELINE = "timeline"


@dataclass(frozen=True)
class DetectedPromise:
    category: PromiseCategory
    phrase: str
    description: str


@dataclass(frozen=True)
class ClarificationLoopResult:
    loop_detected: bool
    repeated_category: Optional[str] = None
    occurrences: int = 0
    category_counts: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyGateResult:
    ok: bool
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CollaboratorResult(Generic[T]):
    """Either ``value`` or ``error`` is set, never both."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def call_collaborator(name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> CollaboratorResult[T]:
    """Run an external collaborator and capture its failure as a value."""
    try:
        return CollaboratorResult(value=fn(*args, **kwargs))
    except Exception as exc:  # collaborator failures are reported, not raised
        logger.warning(
            "collaborator call failed",
            extra={"extra_data": {"collaborator": name, "error": type(exc).__name__}},
        )
        return CollaboratorResult(error=exc)
