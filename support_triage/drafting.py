"""Draft generation: a deterministic template or an Ollama-served model.

Generators re-check their own output with the policy gate; the orchestrator
still runs the gate again on whatever text it finally keeps.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from . import config, metrics, ollama_client
from .audit import log_exception, log_function_call
from .config import TriageSettings
from .intents import intent_config
from .ollama_client import OllamaError
from .policy_gate import check_with_settings
from .redaction import redact
from .validation import SchemaValidationError, validate_payload

logger = logging.getLogger(__name__)

PROMPT_VERSION_DRAFT = "draft-llm-v1"


@dataclass(frozen=True)
class DraftRequest:
    thread_id: str
    intent: str
    customer_message: str
    history: Sequence[Dict[str, str]] = ()
    order: Optional[Dict[str, Any]] = None
    customer: Optional[Dict[str, Any]] = None
    attachment_facts: Sequence[str] = ()
    thread_age_hours: Optional[float] = None


@dataclass(frozen=True)
class DraftResult:
    success: bool
    draft: Optional[str] = None
    policy_gate_passed: bool = False
    policy_violations: Tuple[str, ...] = ()
    raw_draft: Optional[str] = None
    error: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        return self.draft or self.raw_draft


class DraftGenerator(Protocol):
    name: str

    def generate(self, request: DraftRequest) -> DraftResult:
        ...


def _ensure_signature(text: str, settings: TriageSettings) -> str:
    body = text.rstrip()
    if body.endswith(settings.signature):
        return body
    return f"{body}\n\n{settings.signature}"


def _checked(raw: str, settings: TriageSettings) -> DraftResult:
    gate = check_with_settings(raw, settings)
    if not gate.ok:
        return DraftResult(
            success=True,
            draft=None,
            policy_gate_passed=False,
            policy_violations=gate.reasons,
            raw_draft=raw,
        )
    return DraftResult(success=True, draft=raw, policy_gate_passed=True, raw_draft=raw)


class TemplateDraftGenerator:
    """Acknowledgement built from verified order data, no model involved."""

    name = "template"

    def __init__(self, settings: TriageSettings) -> None:
        self.settings = settings

    def generate(self, request: DraftRequest) -> DraftResult:
        name = (request.customer or {}).get("name")
        lines: List[str] = [f"Hi {name}," if name else "Hi there,", ""]
        order = request.order or {}
        if order.get("number"):
            status = order.get("fulfillment_status") or order.get("status") or "being processed"
            lines.append(f"Thanks for reaching out. I pulled up order #{order['number']} and it's currently {status}.")
            if order.get("tracking"):
                lines.append(f"Tracking number: {order['tracking']}")
        else:
            topic = intent_config(request.intent).description.lower()
            lines.append(f"Thanks for reaching out about this ({topic}).")
        if request.attachment_facts:
            lines.append("")
            lines.append("From what you sent over:")
            lines.extend(f"- {fact}" for fact in request.attachment_facts)
        lines.append("")
        lines.append("Let me know anything else that might help and I'll dig in.")
        raw = _ensure_signature("\n".join(lines), self.settings)
        return _checked(raw, self.settings)


SYSTEM_PROMPT = (
    "You write short, friendly customer support replies. Never promise refunds, replacements, "
    "ship dates or delivery dates. Never guarantee outcomes. Respond with JSON only."
)


def build_prompt(request: DraftRequest, settings: TriageSettings) -> str:
    history = "\n".join(
        f"[{item.get('direction', 'inbound')}]: {redact(item.get('body', '')[:400]).text}" for item in request.history
    )
    context: Dict[str, Any] = {"intent": request.intent}
    if request.order:
        context["order"] = request.order
    if request.customer:
        context["customer"] = {k: v for k, v in request.customer.items() if k != "email"}
    if request.attachment_facts:
        context["attachment_facts"] = list(request.attachment_facts)
    if request.thread_age_hours is not None:
        context["thread_age_hours"] = round(request.thread_age_hours, 1)
        if request.thread_age_hours >= 24:
            context["note"] = "The customer has been waiting a while; acknowledge the delay."
    return (
        f"Customer message:\n{redact(request.customer_message).text}\n\n"
        f"Conversation so far:\n{history or '(none)'}\n\n"
        f"Context:\n{json.dumps(context, ensure_ascii=False, default=str)}\n\n"
        f"Sign the reply exactly as '{settings.signature}'.\n"
        'Return JSON: {"reply": "...", "facts_used": ["..."]}'
    )


class OllamaDraftGenerator:
    name = "llm"

    def __init__(self, settings: TriageSettings) -> None:
        self.settings = settings

    def generate(self, request: DraftRequest) -> DraftResult:
        start = time.perf_counter()
        log_function_call(
            "draft.llm",
            stage="request",
            thread_id=request.thread_id,
            model=config.OLLAMA_MODEL,
            prompt_version=PROMPT_VERSION_DRAFT,
        )
        try:
            raw = ollama_client.chat(SYSTEM_PROMPT, build_prompt(request, self.settings))
            payload = ollama_client.extract_json_block(raw)
            validate_payload(payload, "draft.schema.json")
        except (OllamaError, SchemaValidationError, ValueError) as exc:
            log_exception("draft.llm.failed", error=exc, thread_id=request.thread_id)
            return DraftResult(success=False, error=str(exc))
        finally:
            metrics.timing("draft.llm", time.perf_counter() - start)
        reply = _ensure_signature(str(payload["reply"]), self.settings)
        return _checked(reply, self.settings)


def build_draft_generator(settings: TriageSettings, mode: Optional[str] = None) -> DraftGenerator:
    selected = (mode or config.DRAFT_MODE or "template").lower()
    if selected == "llm":
        if ollama_client.is_configured():
            return OllamaDraftGenerator(settings)
        logger.warning("DRAFT_MODE=llm but OLLAMA_MODEL is not set; using template drafts")
    return TemplateDraftGenerator(settings)
