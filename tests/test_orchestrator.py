import threading

import pytest

from fakes import (
    BrokenClassifier,
    BrokenGenerator,
    BrokenVerifier,
    FixedClassifier,
    StaticGenerator,
    StaticVerifier,
)
from support_triage import metrics, thread_ops, thread_store
from support_triage.classifier import RuleBasedClassifier
from support_triage.config import TriageSettings
from support_triage.domain import Action, ThreadState, VerificationStatus
from support_triage.drafting import TemplateDraftGenerator
from support_triage.macros import ESCALATION_NOTICE, INTERNAL_NOTES_HEADER
from support_triage.orchestrator import KeyedLock, TriageOrchestrator
from support_triage.policy_gate import check_with_settings
from support_triage.schemas import InboundMessage
from support_triage.verification import VerificationUnavailableError

SETTINGS = TriageSettings(internal_domains=frozenset({"ourshop.com"}))


def _orchestrator(classifier=None, verifier=None, generator=None):
    return TriageOrchestrator(
        SETTINGS,
        classifier=classifier or RuleBasedClassifier(),
        verifier=verifier or StaticVerifier(VerificationStatus.PENDING),
        draft_generator=generator or TemplateDraftGenerator(SETTINGS),
    )


def _message(body, external_id="thread-1", sender="Jane <jane@example.com>", subject="Help", **extra):
    return InboundMessage(
        channel="email", external_id=external_id, subject=subject, body=body, from_identifier=sender, **extra
    )


def _event_types(thread_id):
    return [event["type"] for event in thread_store.list_events(thread_id)]


def test_chargeback_escalates_with_holding_reply():
    outcome = _orchestrator().process(_message("I'm going to file a chargeback with my bank."))
    assert outcome.intent == "CHARGEBACK_THREAT"
    assert outcome.action == Action.ESCALATE_WITH_DRAFT
    assert outcome.state == ThreadState.ESCALATED
    assert outcome.previous_state == ThreadState.NEW
    assert outcome.draft.startswith("Thanks for your patience.")
    assert ESCALATION_NOTICE in outcome.draft
    assert INTERNAL_NOTES_HEADER in outcome.draft
    assert "Draft only (escalate)" in outcome.draft
    assert outcome.summary == "Chargeback threat - ESCALATED"

    events = thread_store.list_events(outcome.thread_id)
    trace = events[-1]
    assert trace["type"] == "DECISION_TRACE"
    assert trace["payload"]["state_transition"] == {
        "from": "NEW",
        "to": "ESCALATED",
        "reason": "Chargeback threat detected - requires immediate attention",
    }
    drafts = thread_store.list_messages(outcome.thread_id, direction="outbound")
    assert drafts[0]["blocked"] is True
    assert metrics.snapshot()["counters"]["action.ESCALATE_WITH_DRAFT"] == 1


def test_legal_risk_escalates_without_draft():
    outcome = _orchestrator().process(_message("My lawyer will be contacting you about this."))
    assert outcome.intent == "LEGAL_SAFETY_RISK"
    assert outcome.action == Action.ESCALATE
    assert outcome.draft is None
    assert outcome.state == ThreadState.ESCALATED
    assert thread_store.list_messages(outcome.thread_id, direction="outbound") == []


def test_automated_sender_resolves_without_classifying():
    classifier = FixedClassifier("ORDER_STATUS")
    outcome = _orchestrator(classifier=classifier).process(
        _message("Your payout is ready", sender="no-reply@payments.example")
    )
    assert classifier.calls == []
    assert outcome.intent == "AUTOMATED_EMAIL"
    assert outcome.action == Action.NO_REPLY
    assert outcome.state == ThreadState.RESOLVED
    assert outcome.draft is None


def test_human_handling_only_observes():
    orchestrator = _orchestrator()
    first = orchestrator.process(_message("Will this fit my truck? It's the apex unit."))
    thread_ops.take_over(first.thread_id, "sam")

    second = orchestrator.process(_message("Also, I'm going to file a chargeback."))
    assert second.action == Action.NO_REPLY
    assert second.human_handling is True
    assert second.state == second.previous_state == first.state
    assert _event_types(first.thread_id).count("HUMAN_OBSERVATION") == 1
    assert thread_store.get_thread(first.thread_id)["state"] == first.state.value


def test_missing_required_info_asks_for_each_field():
    outcome = _orchestrator(classifier=FixedClassifier("WRONG_ITEM_RECEIVED")).process(
        _message("This is not right", sender="support@ourshop.com")
    )
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert outcome.state == ThreadState.AWAITING_INFO
    assert "1. Order number\n2. What was received\n3. What was expected" in outcome.draft
    assert check_with_settings(outcome.draft, SETTINGS).ok


def test_missing_info_prompt_lists_required_then_optional():
    outcome = _orchestrator(classifier=FixedClassifier("FIRMWARE_UPDATE_REQUEST"), verifier=StaticVerifier()).process(
        _message("Need the new update please", sender="support@ourshop.com")
    )
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert "1. Unit type (Apex/G-Series/Cluster)" in outcome.draft
    assert "2. Order number or email" in outcome.draft
    assert "3." not in outcome.draft


def test_firmware_access_uses_macro():
    outcome = _orchestrator(classifier=FixedClassifier("FIRMWARE_ACCESS_ISSUE"), verifier=StaticVerifier()).process(
        _message("The site keeps kicking me off")
    )
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert "I need 3 quick details" in outcome.draft


def test_docs_mismatch_sends_macro():
    outcome = _orchestrator().process(_message("I watched the video but didn't get the email it shows."))
    assert outcome.intent == "DOCS_VIDEO_MISMATCH"
    assert outcome.action == Action.SEND_PREAPPROVED_MACRO
    assert outcome.state == ThreadState.IN_PROGRESS
    assert outcome.draft.endswith("– Lina")


def test_pending_verification_asks_for_order_number():
    verifier = StaticVerifier(VerificationStatus.PENDING)
    outcome = _orchestrator(verifier=verifier).process(_message("Where is my order?"))
    assert verifier.calls == 1
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert outcome.state == ThreadState.AWAITING_INFO
    assert "could you share your order number" in outcome.draft


def test_internal_sender_skips_verification():
    verifier = StaticVerifier(VerificationStatus.PENDING)
    _orchestrator(verifier=verifier).process(_message("Where is my order #12345?", sender="ops@ourshop.com"))
    assert verifier.calls == 0


def test_flagged_customer_escalates():
    verifier = StaticVerifier(VerificationStatus.FLAGGED, flags=("abusive",))
    outcome = _orchestrator(verifier=verifier).process(_message("Where is my order #12345?"))
    assert outcome.action == Action.ESCALATE_WITH_DRAFT
    assert outcome.state == ThreadState.ESCALATED
    assert "Flags on file: abusive." in outcome.draft


def test_not_found_asks_again():
    verifier = StaticVerifier(VerificationStatus.NOT_FOUND, reason="email_mismatch")
    outcome = _orchestrator(verifier=verifier).process(_message("Where is my order #12345?"))
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert outcome.state == ThreadState.AWAITING_INFO
    assert "couldn't find that order" in outcome.draft


def test_verified_order_reaches_generator():
    verifier = StaticVerifier(
        VerificationStatus.VERIFIED,
        order={"number": "12345", "status": "open", "fulfillment_status": "shipped", "tracking": "1Z999"},
        customer={"name": "Jane", "email": "jane@example.com"},
    )
    outcome = _orchestrator(verifier=verifier).process(_message("Where is my order #12345?"))
    assert outcome.intent == "ORDER_STATUS"
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert outcome.state == ThreadState.IN_PROGRESS
    assert "order #12345 and it's currently shipped" in outcome.draft
    assert "Tracking number: 1Z999" in outcome.draft
    assert outcome.draft.startswith("Hi Jane,")


def test_verification_failure_raises_after_recording():
    orchestrator = _orchestrator(verifier=BrokenVerifier())
    with pytest.raises(VerificationUnavailableError):
        orchestrator.process(_message("Where is my order #12345?"))

    thread = thread_store.find_thread_by_external_id("thread-1")
    assert thread["state"] == "NEW"
    assert [m["direction"] for m in thread_store.list_messages(thread["id"])] == ["inbound"]
    failures = thread_store.list_events(thread["id"], "VERIFICATION_FAILED")
    assert "order service down" in failures[0]["payload"]["error"]


def test_classifier_failure_routes_to_human():
    outcome = _orchestrator(classifier=BrokenClassifier()).process(_message("hello?"))
    assert outcome.intent == "UNKNOWN"
    assert outcome.confidence == pytest.approx(0.3)
    assert outcome.action == Action.ESCALATE_WITH_DRAFT
    assert outcome.state == ThreadState.ESCALATED
    assert "Automatic classification unavailable (Classification error)" in outcome.draft
    assert "CLASSIFICATION_FAILED" in _event_types(outcome.thread_id)


def test_policy_blocked_draft_escalates():
    generator = StaticGenerator("Good news, we will refund you today.\n\n– Lina")
    outcome = _orchestrator(generator=generator).process(_message("Will this fit my truck? It's the apex unit."))
    assert outcome.intent == "COMPATIBILITY_QUESTION"
    assert outcome.action == Action.ESCALATE_WITH_DRAFT
    assert outcome.state == ThreadState.ESCALATED
    assert "Policy gate blocked draft: Banned language: Promises a refund" in outcome.draft

    types = _event_types(outcome.thread_id)
    assert "POLICY_BLOCKED" in types
    assert "PROMISED_ACTION" in types
    trace = thread_store.list_events(outcome.thread_id, "DECISION_TRACE")[-1]["payload"]
    assert trace["state_transition"]["reason"] == "Draft contained blocked policy language"
    assert metrics.snapshot()["counters"]["policy_gate.blocked"] == 1


def test_team_mention_in_generated_draft_is_sent():
    generator = StaticGenerator("I looped in the team; the Apex fits a 2015 F-150.\n\n– Lina")
    outcome = _orchestrator(generator=generator).process(_message("Will this fit my truck? It's the apex unit."))
    assert outcome.intent == "COMPATIBILITY_QUESTION"
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert outcome.state == ThreadState.IN_PROGRESS
    assert outcome.draft.startswith("I looped in the team")
    assert "POLICY_BLOCKED" not in _event_types(outcome.thread_id)


def test_generation_failure_asks_without_draft():
    outcome = _orchestrator(generator=BrokenGenerator()).process(_message("Will this fit my truck? It's the apex unit."))
    assert outcome.action == Action.ASK_CLARIFYING_QUESTIONS
    assert outcome.draft is None
    assert "GENERATION_FAILED" in _event_types(outcome.thread_id)


def test_generator_receives_history_and_attachment_facts():
    generator = StaticGenerator("Happy to check that for you.\n\n– Lina")
    orchestrator = _orchestrator(generator=generator)
    orchestrator.process(_message("Will this fit my truck? It's the apex unit."))
    orchestrator.process(
        _message("Here is a photo of the connector on the apex unit.", metadata={"attachment_facts": ["12-pin connector"]})
    )
    request = generator.requests[-1]
    assert request.attachment_facts == ["12-pin connector"]
    assert [item["direction"] for item in request.history] == ["inbound", "outbound"]
    assert request.thread_age_hours is not None


def test_thank_you_resolves_and_new_message_reopens():
    orchestrator = _orchestrator()
    closed = orchestrator.process(_message("Thank you so much, it works now!"))
    assert closed.action == Action.NO_REPLY
    assert closed.state == ThreadState.RESOLVED

    reopened = orchestrator.process(_message("Will this fit my truck? It's the apex unit."))
    assert reopened.thread_id == closed.thread_id
    assert reopened.previous_state == ThreadState.RESOLVED
    assert reopened.state == ThreadState.IN_PROGRESS
    trace = thread_store.list_events(reopened.thread_id, "DECISION_TRACE")[-1]["payload"]
    assert trace["state_transition"]["reason"] == "Thread reopened due to new customer message"


def test_repeated_questions_escalate_as_loop():
    orchestrator = _orchestrator()
    first = orchestrator.process(_message("Will this fit my truck?"))
    second = orchestrator.process(_message("Will this fit my truck???"))
    assert first.state == second.state == ThreadState.AWAITING_INFO
    assert "Which product" in second.draft

    third = orchestrator.process(_message("Will this fit my truck? Please answer."))
    assert third.action == Action.ESCALATE_WITH_DRAFT
    assert third.state == ThreadState.ESCALATED
    assert "I'm having trouble finding the right answer for you." in third.draft
    trace = thread_store.list_events(third.thread_id, "DECISION_TRACE")[-1]["payload"]
    assert trace["clarification_loop"]["repeated_category"] == "product_unit_type"


def test_thank_you_on_looping_thread_closes_without_escalating():
    orchestrator = _orchestrator()
    orchestrator.process(_message("Will this fit my truck?"))
    orchestrator.process(_message("Will this fit my truck???"))

    closed = orchestrator.process(_message("Thank you, I figured it out!"))
    assert closed.action == Action.NO_REPLY
    assert closed.state == ThreadState.RESOLVED
    assert closed.draft is None
    assert len(thread_store.list_messages(closed.thread_id, direction="outbound")) == 2


def test_lost_version_race_stores_no_draft(monkeypatch):
    original = thread_store.update_thread

    def racing_update(thread_id, expected_version, **kwargs):
        original(thread_id, expected_version, summary="written by another worker")
        return original(thread_id, expected_version, **kwargs)

    monkeypatch.setattr(thread_store, "update_thread", racing_update)
    with pytest.raises(thread_store.StaleThreadError):
        _orchestrator().process(_message("Will this fit my truck?"))

    thread = thread_store.find_thread_by_external_id("thread-1")
    assert thread_store.list_messages(thread["id"], direction="outbound") == []
    assert "DECISION_TRACE" not in _event_types(thread["id"])


def test_unknown_intent_clarified_later():
    orchestrator = _orchestrator()
    first = orchestrator.process(_message("hello there"))
    assert first.intent == "UNKNOWN"
    orchestrator.process(_message("Will this fit my truck? It's the apex unit."))
    thread = thread_store.get_thread(first.thread_id)
    assert thread["intents"] == ["COMPATIBILITY_QUESTION"]
    clarified = thread_store.list_events(first.thread_id, "INTENT_CLARIFIED")
    assert clarified[0]["payload"]["from"] == "UNKNOWN"
    assert clarified[0]["payload"]["to"] == ["COMPATIBILITY_QUESTION"]


def test_internal_spam_label_is_overridden():
    outcome = _orchestrator(classifier=FixedClassifier("VENDOR_SPAM")).process(
        _message("Partnership opportunity for the team", sender="ops@ourshop.com")
    )
    assert outcome.intent == "UNKNOWN"
    assert "CLASSIFICATION_OVERRIDE" in _event_types(outcome.thread_id)


def test_vendor_spam_closes():
    outcome = _orchestrator(classifier=FixedClassifier("VENDOR_SPAM")).process(
        _message("We can grow your sales with SEO", sender="pitch@agency.biz")
    )
    assert outcome.action == Action.NO_REPLY
    assert outcome.state == ThreadState.RESOLVED


def test_messages_without_external_id_get_their_own_threads():
    orchestrator = _orchestrator()
    a = orchestrator.process(_message("hello there", external_id=None))
    b = orchestrator.process(_message("hello there", external_id=None))
    assert a.thread_id != b.thread_id


def test_keyed_lock_serialises_same_key():
    lock = KeyedLock()
    order = []
    entered = threading.Event()
    release = threading.Event()

    def hold_first():
        with lock.hold("t-1"):
            entered.set()
            release.wait(timeout=5)
            order.append("first")

    def hold_second():
        entered.wait(timeout=5)
        with lock.hold("t-1"):
            order.append("second")

    workers = [threading.Thread(target=hold_first), threading.Thread(target=hold_second)]
    for worker in workers:
        worker.start()
    entered.wait(timeout=5)
    release.set()
    for worker in workers:
        worker.join(timeout=5)
    assert order == ["first", "second"]
    assert lock._locks == {}
