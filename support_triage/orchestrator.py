"""Triage pipeline: one inbound message in, one decided outcome out.

Steps run in a fixed priority order and the first step that reaches a
decision wins. Every decision then goes through the same tail: policy gate,
escalation notice, promise audit, state machine, persistence.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from . import metrics, state_machine, thread_store
from .audit import log_exception, log_function_call
from .classifier import Classifier, build_classifier, fallback_classification
from .clarification_loop import CATEGORY_DESCRIPTIONS, detect_clarification_loop
from .config import TriageSettings
from .domain import (
    ESCALATION_ACTIONS,
    SENDABLE_ACTIONS,
    Action,
    ClarificationLoopResult,
    ClassificationResult,
    ThreadState,
    VerificationResult,
    VerificationStatus,
    call_collaborator,
)
from .drafting import DraftGenerator, DraftRequest, build_draft_generator
from .integrator import integrate
from .intents import AUTOMATED_EMAIL, NON_ACTIONABLE_INTENTS, THANK_YOU_CLOSE
from . import macros
from .policy_gate import check_with_settings
from .promised_actions import detect_promised_actions, draft_snippet, summarise_promises
from .schemas import (
    ClassificationOverridePayload,
    CollaboratorFailedPayload,
    DecisionTracePayload,
    DraftMetadata,
    HumanObservationPayload,
    InboundMessage,
    InboundMetadata,
    IntentClarifiedPayload,
    MessageReceivedPayload,
    PolicyBlockedPayload,
    PromisedActionPayload,
    StateChange,
    TriageOutcome,
)
from .sender_filter import check_sender
from .summary import thread_summary
from .verification import OrderRecordVerifier, Verifier, VerificationUnavailableError, fold_verified_data

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
CONTEXT_SNIPPET = 200


class KeyedLock:
    """A mutex per key; entries are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


THREAD_LOCKS = KeyedLock()


@dataclass
class Decision:
    action: Action
    draft: Optional[str] = None
    draft_source: Optional[str] = None
    missing_required: bool = False
    note: Optional[str] = None
    policy_blocked: bool = False
    policy_violations: Tuple[str, ...] = ()


@dataclass
class _Context:
    message: InboundMessage
    thread: Dict[str, Any]
    message_id: str
    previous_state: ThreadState
    intent: str = AUTOMATED_EMAIL
    confidence: float = 1.0
    thread_intents: Tuple[str, ...] = ()
    classification: Optional[ClassificationResult] = None
    verification: Optional[VerificationResult] = None
    loop: Optional[ClarificationLoopResult] = None

    @property
    def thread_id(self) -> str:
        return self.thread["id"]


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class TriageOrchestrator:
    def __init__(
        self,
        settings: Optional[TriageSettings] = None,
        *,
        classifier: Optional[Classifier] = None,
        verifier: Optional[Verifier] = None,
        draft_generator: Optional[DraftGenerator] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.settings = settings or TriageSettings.from_env()
        self.classifier = classifier or build_classifier(floor=self.settings.confidence_floor)
        self.verifier = verifier or OrderRecordVerifier()
        self.draft_generator = draft_generator or build_draft_generator(self.settings)
        self.locks = locks or THREAD_LOCKS

    def process(self, message: InboundMessage) -> TriageOutcome:
        """Triage one inbound message. Persistence errors propagate."""
        start = time.perf_counter()
        log_function_call("triage.process.start", channel=message.channel, external_id=message.external_id)
        guard = self.locks.hold(f"external:{message.external_id}") if message.external_id else nullcontext()
        try:
            with guard:
                outcome = self._run(message)
        except Exception as exc:
            metrics.incr("triage.failed")
            log_exception("triage.process.failed", error=exc, channel=message.channel, external_id=message.external_id)
            raise
        finally:
            metrics.timing("triage.process", time.perf_counter() - start)
        log_function_call(
            "triage.process.end",
            stage="completed",
            thread_id=outcome.thread_id,
            action=outcome.action,
            state=outcome.state,
        )
        return outcome

    def _run(self, message: InboundMessage) -> TriageOutcome:
        thread, created = thread_store.resolve_thread(
            external_id=message.external_id, subject=message.subject, channel=message.channel
        )
        message_id = thread_store.insert_message(
            thread["id"],
            direction="inbound",
            body_text=message.body_text,
            channel=message.channel,
            from_identifier=message.from_identifier,
            to_identifier=message.to_identifier,
            subject=message.subject,
            metadata=InboundMetadata(channel_data=message.metadata),
            message_date=thread_store.to_iso(message.message_date) if message.message_date else None,
        )
        thread_store.append_event(
            thread["id"],
            MessageReceivedPayload(
                message_id=message_id,
                channel=message.channel,
                from_identifier=message.from_identifier,
                subject=message.subject,
            ),
        )
        ctx = _Context(
            message=message,
            thread=thread,
            message_id=message_id,
            previous_state=ThreadState(thread["state"]),
            thread_intents=tuple(thread.get("intents") or ()),
        )

        screened = check_sender(message.from_identifier, message.subject, message.metadata, self.settings)
        if screened.automated:
            metrics.incr("sender_filter.automated")
            ctx.thread_intents = tuple(dict.fromkeys(ctx.thread_intents + (AUTOMATED_EMAIL,)))
            decision = Decision(action=Action.NO_REPLY, note=f"automated_sender:{screened.rule}")
            return self._finalise(ctx, decision)

        if thread["human_handling"]:
            return self._observe(ctx)

        self._classify(ctx)
        decision = self._decide(ctx)
        return self._finalise(ctx, decision)

    def _observe(self, ctx: _Context) -> TriageOutcome:
        thread_store.append_event(
            ctx.thread_id,
            HumanObservationPayload(message_id=ctx.message_id, handler=ctx.thread.get("human_handler")),
        )
        metrics.incr("triage.observed")
        intent = ctx.thread.get("last_intent") or "UNKNOWN"
        return TriageOutcome(
            thread_id=ctx.thread_id,
            message_id=ctx.message_id,
            intent=intent,
            confidence=0.0,
            action=Action.NO_REPLY,
            draft=None,
            state=ctx.previous_state,
            previous_state=ctx.previous_state,
            human_handling=True,
            summary=thread_summary(intent, ctx.previous_state, Action.NO_REPLY, human_handling=True),
        )

    def _classify(self, ctx: _Context) -> None:
        context_rows = thread_store.recent_messages(
            ctx.thread_id, limit=self.settings.context_messages, exclude_id=ctx.message_id
        )
        context = [f"[{row['direction']}]: {(row['body_text'] or '')[:CONTEXT_SNIPPET]}" for row in context_rows]
        result = call_collaborator(
            "classifier", self.classifier.classify, ctx.message.subject, ctx.message.body_text, context
        )
        if result.ok and result.value is not None:
            classification = result.value
        else:
            error = result.error or RuntimeError("classifier returned no result")
            metrics.incr("classifier.failed")
            log_exception("classifier.failed", error=error, thread_id=ctx.thread_id)
            thread_store.append_event(
                ctx.thread_id,
                CollaboratorFailedPayload(type="CLASSIFICATION_FAILED", message_id=ctx.message_id, error=str(error)[:300]),
            )
            classification = fallback_classification("Classification error")

        integration = integrate(classification, ctx.thread_intents, ctx.message.from_identifier, self.settings)
        if integration.spam_override:
            thread_store.append_event(
                ctx.thread_id,
                ClassificationOverridePayload(
                    message_id=ctx.message_id,
                    original_intent=classification.primary_intent,
                    recorded_intent=integration.classification.primary_intent,
                    reason="internal_sender_not_spam",
                ),
            )
        if integration.intent_clarified:
            thread_store.append_event(
                ctx.thread_id,
                IntentClarifiedPayload(to=list(integration.clarified_to), message_id=ctx.message_id),
            )
        ctx.classification = integration.classification
        ctx.thread_intents = integration.thread_intents
        ctx.intent = ctx.classification.primary_intent
        ctx.confidence = ctx.classification.confidence

    def _decide(self, ctx: _Context) -> Decision:
        classification = ctx.classification
        assert classification is not None
        signature = self.settings.signature

        if classification.degraded:
            reason = classification.intents[0].reasoning if classification.intents else "unavailable"
            return Decision(
                action=Action.ESCALATE_WITH_DRAFT,
                draft=macros.degraded_classification_note(reason),
                draft_source="escalation",
                note="classification_degraded",
            )

        if classification.auto_escalate:
            note = macros.static_escalation_note(ctx.intent)
            if note:
                return Decision(action=Action.ESCALATE_WITH_DRAFT, draft=note, draft_source="escalation", note="auto_escalate_intent")
            return Decision(action=Action.ESCALATE, note="auto_escalate_intent")

        if classification.requires_verification and not self.settings.is_internal_sender(ctx.message.from_identifier):
            decision = self._verify(ctx)
            if decision is not None:
                return decision
            classification = ctx.classification
            assert classification is not None

        # Closing intents end the thread before loop detection.
        if ctx.intent == THANK_YOU_CLOSE:
            return Decision(action=Action.NO_REPLY, note="customer_closed")
        if ctx.intent in NON_ACTIONABLE_INTENTS:
            return Decision(action=Action.NO_REPLY, note=f"{ctx.intent.lower()}_auto_close")

        ctx.loop = detect_clarification_loop(ctx.thread_id, thread_store.outbound_bodies, self.settings.loop_threshold)
        if ctx.loop.loop_detected:
            metrics.incr("clarification_loop.detected")
            category = CATEGORY_DESCRIPTIONS.get(ctx.loop.repeated_category or "", ctx.loop.repeated_category)
            return Decision(
                action=Action.ESCALATE_WITH_DRAFT,
                draft=macros.loop_escalation_draft(signature),
                draft_source="escalation",
                note=f"clarification_loop: asked for {category} {ctx.loop.occurrences} times",
            )

        note = macros.static_escalation_note(ctx.intent)
        if note:
            return Decision(action=Action.ESCALATE_WITH_DRAFT, draft=note, draft_source="escalation", note="always_escalate_intent")

        name = (ctx.verification.customer or {}).get("name") if ctx.verification else None
        if classification.missing_required:
            macro = macros.macro_for(ctx.intent, signature, name=name)
            if macro:
                return Decision(
                    action=Action.ASK_CLARIFYING_QUESTIONS, draft=macro, draft_source="macro", missing_required=True
                )
            return Decision(
                action=Action.ASK_CLARIFYING_QUESTIONS,
                draft=macros.missing_info_prompt(classification.missing_info, signature),
                draft_source="synthesized",
                missing_required=True,
            )

        if ctx.intent in macros.ANSWER_MACRO_INTENTS:
            return Decision(
                action=Action.SEND_PREAPPROVED_MACRO,
                draft=macros.macro_for(ctx.intent, signature, name=name),
                draft_source="macro",
            )

        return self._generate(ctx)

    def _verify(self, ctx: _Context) -> Optional[Decision]:
        assert ctx.classification is not None
        text = f"{ctx.message.subject}\n{ctx.message.body_text}"
        result = call_collaborator("verifier", self.verifier.verify, ctx.thread_id, ctx.message.from_identifier, text)
        if not result.ok or result.value is None:
            error = result.error or RuntimeError("verifier returned no result")
            metrics.incr("verifier.failed")
            thread_store.append_event(
                ctx.thread_id,
                CollaboratorFailedPayload(type="VERIFICATION_FAILED", message_id=ctx.message_id, error=str(error)[:300]),
            )
            log_exception("verifier.failed", error=error, thread_id=ctx.thread_id)
            raise VerificationUnavailableError(f"Verification failed for thread {ctx.thread_id}") from error

        verification = result.value
        ctx.verification = verification
        signature = self.settings.signature
        if verification.status == VerificationStatus.PENDING:
            return Decision(
                action=Action.ASK_CLARIFYING_QUESTIONS,
                draft=macros.verification_request(signature),
                draft_source="verification_prompt",
                missing_required=True,
                note="awaiting_verification",
            )
        if verification.status == VerificationStatus.FLAGGED:
            return Decision(
                action=Action.ESCALATE_WITH_DRAFT,
                draft=macros.verification_flagged_note(verification.flags),
                draft_source="escalation",
                note="customer_flagged",
            )
        if verification.status == VerificationStatus.NOT_FOUND:
            return Decision(
                action=Action.ASK_CLARIFYING_QUESTIONS,
                draft=macros.verification_not_found(signature),
                draft_source="verification_prompt",
                missing_required=True,
                note="verification_failed",
            )
        ctx.classification = fold_verified_data(ctx.classification, verification)
        return None

    def _generate(self, ctx: _Context) -> Decision:
        history = [
            {"direction": row["direction"], "body": row["body_text"] or ""}
            for row in thread_store.list_messages(ctx.thread_id)
            if row["id"] != ctx.message_id and not row["blocked"]
        ][-HISTORY_LIMIT:]
        created_at = _parse_iso(ctx.thread.get("created_at"))
        age_hours = (datetime.now(timezone.utc) - created_at).total_seconds() / 3600 if created_at else None
        facts = ctx.message.metadata.get("attachment_facts") or []
        request = DraftRequest(
            thread_id=ctx.thread_id,
            intent=ctx.intent,
            customer_message=ctx.message.body_text,
            history=history,
            order=ctx.verification.order if ctx.verification else None,
            customer=ctx.verification.customer if ctx.verification else None,
            attachment_facts=[str(fact) for fact in facts] if isinstance(facts, list) else [],
            thread_age_hours=age_hours,
        )
        result = call_collaborator("draft_generator", self.draft_generator.generate, request)
        draft_result = result.value if result.ok else None
        if draft_result is None or not draft_result.success or not draft_result.text:
            error = result.error or (draft_result.error if draft_result else None) or "empty draft"
            logger.warning(
                "draft generation failed; asking without a draft",
                extra={"extra_data": {"thread_id": ctx.thread_id, "error": str(error)[:300]}},
            )
            metrics.incr("draft_generator.failed")
            thread_store.append_event(
                ctx.thread_id,
                CollaboratorFailedPayload(type="GENERATION_FAILED", message_id=ctx.message_id, error=str(error)[:300]),
            )
            return Decision(action=Action.ASK_CLARIFYING_QUESTIONS, note="generation_failed")
        return Decision(
            action=Action.ASK_CLARIFYING_QUESTIONS,
            draft=draft_result.text,
            draft_source="generated",
            policy_violations=draft_result.policy_violations,
        )

    def _gate(self, ctx: _Context, decision: Decision) -> Decision:
        if decision.action not in SENDABLE_ACTIONS or not decision.draft:
            return decision
        gate = check_with_settings(decision.draft, self.settings)
        if gate.ok:
            return decision
        metrics.incr("policy_gate.blocked")
        thread_store.append_event(
            ctx.thread_id,
            PolicyBlockedPayload(
                message_id=ctx.message_id,
                violations=list(gate.reasons),
                draft_source=decision.draft_source or "unknown",
            ),
        )
        return Decision(
            action=Action.ESCALATE_WITH_DRAFT,
            draft=macros.policy_blocked_note(gate.reasons, decision.draft),
            draft_source="escalation",
            missing_required=decision.missing_required,
            note="policy_blocked",
            policy_blocked=True,
            policy_violations=gate.reasons,
        )

    def _finalise(self, ctx: _Context, decision: Decision) -> TriageOutcome:
        decision = self._gate(ctx, decision)
        if decision.action == Action.ESCALATE_WITH_DRAFT:
            decision.draft = macros.with_escalation_notice(decision.draft, self.settings.signature)

        events: List[BaseModel] = []
        promises = detect_promised_actions(decision.draft)
        if promises:
            metrics.incr("promised_actions.detected", len(promises))
            events.append(
                PromisedActionPayload(
                    message_id=ctx.message_id,
                    draft_snippet=draft_snippet(decision.draft),
                    **summarise_promises(promises),
                )
            )

        args = (ctx.previous_state, decision.action, ctx.intent, decision.policy_blocked, decision.missing_required)
        new_state = state_machine.next_state(*args)
        reason = state_machine.transition_reason(*args)
        summary = thread_summary(ctx.intent, new_state, decision.action)

        events.append(
            DecisionTracePayload(
                message_id=ctx.message_id,
                intent=ctx.intent,
                confidence=ctx.confidence,
                action=decision.action,
                draft=decision.draft,
                channel=ctx.message.channel,
                state_transition=StateChange(from_state=ctx.previous_state, to_state=new_state, reason=reason),
                note=decision.note,
                classification=ctx.classification.to_dict() if ctx.classification else None,
                verification=_verification_trace(ctx.verification),
                clarification_loop=_loop_trace(ctx.loop),
                policy_violations=list(decision.policy_violations),
                summary=summary,
            )
        )
        drafts: List[thread_store.PendingMessage] = []
        if decision.draft:
            drafts.append(
                thread_store.PendingMessage(
                    direction="outbound",
                    role="draft",
                    body_text=decision.draft,
                    channel=ctx.message.channel,
                    to_identifier=ctx.message.from_identifier,
                    subject=ctx.message.subject,
                    metadata=DraftMetadata(
                        source=decision.draft_source or "generated",
                        action=decision.action,
                        blocked=decision.action in ESCALATION_ACTIONS,
                        policy_violations=list(decision.policy_violations),
                    ),
                    blocked=decision.action in ESCALATION_ACTIONS,
                )
            )
        thread_store.update_thread(
            ctx.thread_id,
            ctx.thread["version"],
            messages=drafts,
            events=events,
            state=new_state,
            last_intent=ctx.intent,
            intents=list(ctx.thread_intents),
            summary=summary,
        )

        metrics.incr(f"action.{decision.action.value}")
        metrics.incr(f"state.{new_state.value}")
        logger.info(
            "triage decision",
            extra={
                "extra_data": {
                    "thread_id": ctx.thread_id,
                    "intent": ctx.intent,
                    "action": decision.action.value,
                    "state": new_state.value,
                    "previous_state": ctx.previous_state.value,
                }
            },
        )
        return TriageOutcome(
            thread_id=ctx.thread_id,
            message_id=ctx.message_id,
            intent=ctx.intent,
            confidence=ctx.confidence,
            action=decision.action,
            draft=decision.draft,
            state=new_state,
            previous_state=ctx.previous_state,
            human_handling=bool(ctx.thread.get("human_handling")),
            summary=summary,
        )


def _verification_trace(verification: Optional[VerificationResult]) -> Optional[Dict[str, Any]]:
    if verification is None:
        return None
    trace: Dict[str, Any] = {"status": verification.status.value}
    if verification.reason:
        trace["reason"] = verification.reason
    if verification.flags:
        trace["flags"] = list(verification.flags)
    if verification.order:
        trace["order_number"] = verification.order.get("number")
    return trace


def _loop_trace(loop: Optional[ClarificationLoopResult]) -> Optional[Dict[str, Any]]:
    if loop is None:
        return None
    return {
        "loop_detected": loop.loop_detected,
        "repeated_category": loop.repeated_category,
        "occurrences": loop.occurrences,
        "category_counts": dict(loop.category_counts),
    }
