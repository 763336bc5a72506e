from __future__ import annotations

import pytest
from fastapi import HTTPException

from fakes import BrokenVerifier, StaticVerifier
from support_triage import config, server
from support_triage.classifier import RuleBasedClassifier
from support_triage.config import TriageSettings
from support_triage.domain import ThreadState, VerificationStatus
from support_triage.drafting import TemplateDraftGenerator
from support_triage.metrics_api import metrics_snapshot
from support_triage.orchestrator import TriageOrchestrator
from support_triage.schemas import ArchiveRequest, HumanHandlingRequest, InboundMessage, ManualTransitionRequest


@pytest.fixture
def orchestrator(monkeypatch):
    settings = TriageSettings()
    instance = TriageOrchestrator(
        settings,
        classifier=RuleBasedClassifier(),
        verifier=StaticVerifier(VerificationStatus.PENDING),
        draft_generator=TemplateDraftGenerator(settings),
    )
    monkeypatch.setattr(server, "_ORCHESTRATOR", instance)
    return instance


def _ingest(text="I'm filing a chargeback with my bank.", external_id="api-1"):
    return server.ingest(InboundMessage(external_id=external_id, subject="Order", body_text=text, from_identifier="jane@example.com"))


def test_healthz_reports_db():
    assert server.healthz()["db"] is True


def test_ingest_then_read_thread(orchestrator):
    outcome = _ingest()
    assert outcome.state == ThreadState.ESCALATED

    thread = server.get_thread(outcome.thread_id)
    assert thread["state"] == "ESCALATED"
    assert thread["state_info"]["priority"] == 0
    assert [m["direction"] for m in thread["messages"]] == ["inbound", "outbound"]
    assert thread["events"][-1]["type"] == "DECISION_TRACE"


def test_unknown_thread_is_404():
    with pytest.raises(HTTPException) as exc:
        server.get_thread("missing")
    assert exc.value.status_code == 404


def test_invalid_manual_transition_is_409(orchestrator):
    outcome = _ingest("Thank you, all good now!")
    assert outcome.state == ThreadState.RESOLVED
    with pytest.raises(HTTPException) as exc:
        server.transition_thread(outcome.thread_id, ManualTransitionRequest(to_state=ThreadState.ESCALATED, actor="sam"))
    assert exc.value.status_code == 409

    moved = server.transition_thread(outcome.thread_id, ManualTransitionRequest(to_state=ThreadState.IN_PROGRESS, actor="sam"))
    assert moved["state"] == "IN_PROGRESS"


def test_verification_outage_is_502(monkeypatch, orchestrator):
    monkeypatch.setattr(orchestrator, "verifier", BrokenVerifier())
    with pytest.raises(HTTPException) as exc:
        _ingest("Where is my order #12345?")
    assert exc.value.status_code == 502


def test_human_handling_archive_and_sweep(orchestrator):
    outcome = _ingest()
    taken = server.set_human_handling(outcome.thread_id, HumanHandlingRequest(enabled=True, handler="sam"))
    assert taken["human_handling"] is True
    assert server.sweep_stale_handling() == {"returned": [], "errors": {}}
    archived = server.archive_thread(outcome.thread_id, ArchiveRequest(actor="sam"))
    assert archived["is_archived"] is True


def test_list_threads_hides_archived(orchestrator):
    kept = _ingest(external_id="api-1")
    gone = _ingest(external_id="api-2")
    server.archive_thread(gone.thread_id, ArchiveRequest(actor="sam"))

    listing = server.list_threads()
    assert [t["id"] for t in listing["items"]] == [kept.thread_id]
    assert listing["items"][0]["state_info"]["label"]
    assert server.list_threads(include_archived=True)["count"] == 2


def test_metrics_snapshot_counts_actions(orchestrator):
    _ingest()
    snapshot = metrics_snapshot()
    assert snapshot["counters"]["action.ESCALATE_WITH_DRAFT"] == 1


def test_api_key_enforced(monkeypatch):
    monkeypatch.setattr(config, "REQUIRE_API_KEY", True)
    monkeypatch.setattr(config, "INGEST_API_KEY", "secret")
    with pytest.raises(HTTPException) as exc:
        server._get_api_key("wrong")
    assert exc.value.status_code == 403
    assert server._get_api_key("secret") == "secret"


def test_api_key_optional_by_default():
    assert server._get_api_key(None) == ""
