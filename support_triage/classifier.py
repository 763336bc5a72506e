"""Intent classifiers: rule-based regexes or an Ollama-served model.

Both variants return the same ``ClassificationResult`` so the integrator and
orchestrator never need to know which one ran.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional, Pattern, Protocol, Sequence, Tuple

from . import config, metrics, ollama_client
from .audit import log_function_call
from .domain import ClassificationResult, IntentScore, rank_intents
from .intents import INTENT_CATALOG, UNKNOWN, check_required_info, intent_config, is_known_intent
from .redaction import redact
from .validation import validate_with_retry

logger = logging.getLogger(__name__)

PROMPT_VERSION_LLM = "classify-llm-v1"
NO_MATCH_CONFIDENCE = 0.5
FAILURE_CONFIDENCE = 0.3


class Classifier(Protocol):
    name: str

    def classify(self, subject: str, body: str, context: Sequence[str] = ()) -> ClassificationResult:
        ...


def build_classification(
    scores: Sequence[IntentScore],
    text: str,
    *,
    floor: float = 0.5,
    requires_verification: Optional[bool] = None,
    auto_escalate: Optional[bool] = None,
    no_match_reason: str = "No intent matched with sufficient confidence",
) -> ClassificationResult:
    """Normalise raw scores into a ranked result with catalog-derived gating."""
    kept: List[IntentScore] = []
    for score in scores:
        if not is_known_intent(score.slug) or score.confidence < floor:
            continue
        kept.append(IntentScore(score.slug, min(1.0, max(0.0, float(score.confidence))), score.reasoning or ""))
    if not kept:
        kept.append(IntentScore(UNKNOWN, NO_MATCH_CONFIDENCE, no_match_reason))

    ranked = rank_intents(kept)
    primary = intent_config(ranked[0].slug)
    return ClassificationResult(
        intents=ranked,
        requires_verification=primary.requires_verification if requires_verification is None else requires_verification,
        auto_escalate=primary.auto_escalate if auto_escalate is None else auto_escalate,
        missing_info=check_required_info(primary.slug, text),
    )


def fallback_classification(reason: str) -> ClassificationResult:
    """Low-confidence stand-in used when no classifier answer is available."""
    return ClassificationResult(
        intents=(IntentScore(UNKNOWN, FAILURE_CONFIDENCE, reason),),
        degraded=True,
    )


def _rule(*patterns: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


# First matching rule wins; order matters.
RULES: Tuple[Tuple[str, float, Tuple[Pattern[str], ...]], ...] = (
    ("THANK_YOU_CLOSE", 0.9, _rule(r"thank you", r"appreciate", r"happy new year", r"thanks!$")),
    ("CHARGEBACK_THREAT", 0.9, _rule(r"chargeback", r"\bbbb\b", r"dispute", r"\bbank\b", r"fraud")),
    ("LEGAL_SAFETY_RISK", 0.9, _rule(r"\blawyer\b", r"\battorney\b", r"\blawsuit\b", r"\bsue\b", r"caught fire", r"\binjur", r"\bunsafe\b")),
    ("VENDOR_SPAM", 0.8, _rule(r"partnership opportunit", r"\bseo\b", r"guest post", r"grow your (business|sales)", r"backlinks")),
    ("FIRMWARE_ACCESS_ISSUE", 0.8, _rule(r"kicking me off", r"can't log in", r"login loop", r"\b403\b", r"access denied")),
    ("FIRMWARE_UPDATE_REQUEST", 0.7, _rule(r"firmware", r"update software", r"update file")),
    ("DOCS_VIDEO_MISMATCH", 0.8, _rule(r"watched the video", r"didn'?t get the email", r"email shown in")),
    ("FOLLOW_UP_NO_NEW_INFO", 0.7, _rule(r"since september", r"promises", r"no response", r"still waiting", r"any update")),
    ("PART_IDENTIFICATION", 0.7, _rule(r"what is this", r"\b3760\b", r"no idea what that was", r"part number")),
    ("WRONG_ITEM_RECEIVED", 0.75, _rule(r"wrong (item|part|unit|product)", r"not what i ordered")),
    ("MISSING_DAMAGED_ITEM", 0.75, _rule(r"\bmissing\b", r"\bdamaged\b", r"arrived broken", r"\bcracked\b")),
    ("RETURN_REFUND_REQUEST", 0.75, _rule(r"\brefund\b", r"\breturn (it|this|the|my)\b", r"send it back")),
    ("ORDER_CHANGE_REQUEST", 0.7, _rule(r"cancel (my|the) order", r"change (my|the) (order|address|shipping)")),
    ("ORDER_STATUS", 0.7, _rule(r"where is my order", r"\btracking\b", r"shipped yet", r"order status", r"when will (it|my order) (ship|arrive)")),
    ("COMPATIBILITY_QUESTION", 0.7, _rule(r"compatible", r"will (it|this) (fit|work)", r"work with my")),
    ("INSTALL_GUIDANCE", 0.7, _rule(r"\binstall", r"wiring", r"hook (it )?up")),
    ("FUNCTIONALITY_BUG", 0.65, _rule(r"not working", r"stopped working", r"\bglitch", r"\bbug\b")),
    ("PRODUCT_SUPPORT", 0.6, _rule(r"\bscreen\b", r"\baudio\b", r"won'?t (turn on|power)")),
)


class RuleBasedClassifier:
    """Deterministic classifier over ordered regex rules."""

    name = "rules"

    def __init__(self, floor: float = 0.5) -> None:
        self.floor = floor

    def classify(self, subject: str, body: str, context: Sequence[str] = ()) -> ClassificationResult:
        text = f"{subject or ''}\n{body or ''}"
        lowered = text.lower().strip()
        for slug, confidence, patterns in RULES:
            if any(pattern.search(lowered) for pattern in patterns):
                return build_classification(
                    [IntentScore(slug, confidence, "Matched rule")], text, floor=self.floor
                )
        return build_classification([], text, floor=self.floor, no_match_reason="No rule matched")


SYSTEM_PROMPT = (
    "You are an intent classifier for a customer support inbox. "
    "Return only JSON matching the requested shape."
)


def _intent_reference() -> str:
    return "\n".join(f"- {slug}: {entry.description}" for slug, entry in INTENT_CATALOG.items())


def build_prompt(subject: str, body: str, context: Sequence[str] = (), floor: float = 0.5) -> str:
    context_block = "\n".join(context)
    return (
        "AVAILABLE INTENTS:\n"
        f"{_intent_reference()}\n\n"
        "RULES:\n"
        "1. A message can have multiple intents.\n"
        f"2. Only include intents with confidence >= {floor}; if none qualifies return UNKNOWN.\n"
        "3. Order intents by confidence, highest first.\n"
        "4. VENDOR_SPAM covers partnership pitches, marketing outreach and sales emails.\n"
        "5. requires_verification is true when the request concerns a specific order, purchase or account.\n"
        "6. auto_escalate is true for legal action, threats or anything a human should review.\n\n"
        'Return JSON: {"intents": [{"slug": "...", "confidence": 0.0, "reasoning": "..."}], '
        '"requires_verification": false, "auto_escalate": false}\n\n'
        f"SUBJECT: {subject}\n\nBODY:\n{body}\n"
        + (f"\nCONVERSATION CONTEXT:\n{context_block}\n" if context_block else "")
    )


class OllamaClassifier:
    """Model-backed classifier. Raises on any failure; callers degrade."""

    name = "llm"

    def __init__(self, floor: float = 0.5) -> None:
        self.floor = floor

    def classify(self, subject: str, body: str, context: Sequence[str] = ()) -> ClassificationResult:
        start = time.perf_counter()
        redacted_body = redact(body or "")
        redacted_context = [redact(item).text for item in context]
        prompt = build_prompt(subject or "", redacted_body.text, redacted_context, self.floor)
        log_function_call(
            "classify.llm",
            stage="request",
            model=config.OLLAMA_MODEL,
            prompt_version=PROMPT_VERSION_LLM,
            redaction_applied=redacted_body.applied,
        )
        raw = ollama_client.chat(SYSTEM_PROMPT, prompt, max_tokens=500)
        parsed = ollama_client.extract_json_block(raw)

        def _fix(payload: Dict[str, Any]) -> Dict[str, Any]:
            intents = payload.get("intents")
            if not isinstance(intents, list):
                intents = []
            cleaned = []
            for item in intents:
                if not isinstance(item, dict) or not item.get("slug"):
                    continue
                try:
                    confidence = float(item.get("confidence", 0.0))
                except (TypeError, ValueError):
                    continue
                cleaned.append(
                    {
                        "slug": str(item["slug"]).upper(),
                        "confidence": min(1.0, max(0.0, confidence)),
                        "reasoning": str(item.get("reasoning") or ""),
                    }
                )
            fixed = {"intents": cleaned}
            for key in ("requires_verification", "auto_escalate"):
                if isinstance(payload.get(key), bool):
                    fixed[key] = payload[key]
            return fixed

        parsed = validate_with_retry(parsed, "classification.schema.json", fixer=_fix)
        scores = [
            IntentScore(str(item["slug"]).upper(), float(item["confidence"]), str(item.get("reasoning") or ""))
            for item in parsed["intents"]
        ]
        result = build_classification(
            scores,
            f"{subject or ''}\n{body or ''}",
            floor=self.floor,
            requires_verification=parsed.get("requires_verification") if isinstance(parsed.get("requires_verification"), bool) else None,
            auto_escalate=parsed.get("auto_escalate") if isinstance(parsed.get("auto_escalate"), bool) else None,
        )
        metrics.timing("classify.llm", time.perf_counter() - start)
        return result


class UnconfiguredClassifier:
    """Stands in for the model classifier when no model is configured."""

    name = "unconfigured"

    def classify(self, subject: str, body: str, context: Sequence[str] = ()) -> ClassificationResult:
        return fallback_classification("LLM not configured")


def build_classifier(mode: Optional[str] = None, floor: float = 0.5) -> Classifier:
    selected = (mode or config.CLASSIFIER_MODE or "rules").lower()
    if selected == "llm":
        if not ollama_client.is_configured():
            logger.warning("CLASSIFIER_MODE=llm but OLLAMA_MODEL is not set; classifications will need human review")
            return UnconfiguredClassifier()
        return OllamaClassifier(floor=floor)
    return RuleBasedClassifier(floor=floor)
