import pytest

from support_triage import thread_store
from support_triage.domain import Action, ThreadState
from support_triage.schemas import DraftMetadata, HumanObservationPayload, InboundMetadata, MessageReceivedPayload


def _thread(external_id="ext-1"):
    thread, created = thread_store.resolve_thread(external_id=external_id, subject="Help", channel="email")
    return thread, created


def test_resolve_reuses_open_thread():
    first, created = _thread()
    again, created_again = _thread()
    assert created is True
    assert created_again is False
    assert again["id"] == first["id"]
    assert first["state"] == ThreadState.NEW.value
    assert first["version"] == 0


def test_archived_external_id_starts_new_thread():
    first, _ = _thread()
    thread_store.update_thread(first["id"], first["version"], is_archived=True)
    second, created = _thread()
    assert created is True
    assert second["id"] != first["id"]


def test_messages_keep_order_and_metadata():
    thread, _ = _thread()
    inbound = thread_store.insert_message(
        thread["id"], direction="inbound", body_text="hi", metadata=InboundMetadata(channel_data={"x": 1})
    )
    thread_store.insert_message(
        thread["id"],
        direction="outbound",
        role="draft",
        body_text="escalated note",
        metadata=DraftMetadata(source="escalation", action=Action.ESCALATE_WITH_DRAFT, blocked=True),
        blocked=True,
    )
    thread_store.insert_message(thread["id"], direction="outbound", role="draft", body_text="Which order?")

    messages = thread_store.list_messages(thread["id"])
    assert [m["direction"] for m in messages] == ["inbound", "outbound", "outbound"]
    assert messages[0]["metadata"] == {"kind": "inbound", "channel_data": {"x": 1}}
    assert messages[1]["metadata"]["action"] == "ESCALATE_WITH_DRAFT"
    assert thread_store.outbound_bodies(thread["id"]) == ["Which order?"]
    recent = thread_store.recent_messages(thread["id"], limit=2, exclude_id=inbound)
    assert [m["body_text"] for m in recent] == ["escalated note", "Which order?"]


def test_invalid_direction_rejected():
    thread, _ = _thread()
    with pytest.raises(ValueError):
        thread_store.insert_message(thread["id"], direction="sideways", body_text="?")


def test_update_checks_version_and_appends_events():
    thread, _ = _thread()
    version = thread_store.update_thread(
        thread["id"],
        thread["version"],
        events=[HumanObservationPayload(message_id="m-1")],
        state=ThreadState.IN_PROGRESS,
        intents=["ORDER_STATUS"],
    )
    assert version == 1
    stored = thread_store.get_thread(thread["id"])
    assert stored["state"] == "IN_PROGRESS"
    assert stored["intents"] == ["ORDER_STATUS"]
    assert [e["type"] for e in thread_store.list_events(thread["id"])] == ["HUMAN_OBSERVATION"]

    with pytest.raises(thread_store.StaleThreadError):
        thread_store.update_thread(
            thread["id"], thread["version"], events=[HumanObservationPayload(message_id="m-2")], state=ThreadState.RESOLVED
        )
    assert thread_store.get_thread(thread["id"])["state"] == "IN_PROGRESS"
    assert len(thread_store.list_events(thread["id"])) == 1


def test_unknown_thread_and_fields():
    with pytest.raises(thread_store.ThreadNotFoundError):
        thread_store.get_thread("nope")
    with pytest.raises(thread_store.ThreadNotFoundError):
        thread_store.update_thread("nope", 0, state=ThreadState.RESOLVED)
    thread, _ = _thread()
    with pytest.raises(ValueError):
        thread_store.update_thread(thread["id"], 0, version=9)


def test_events_filter_by_type():
    thread, _ = _thread()
    thread_store.append_event(thread["id"], MessageReceivedPayload(message_id="m-1", channel="email"))
    thread_store.append_event(thread["id"], HumanObservationPayload(message_id="m-1"))
    received = thread_store.list_events(thread["id"], "MESSAGE_RECEIVED")
    assert len(received) == 1
    assert received[0]["payload"]["channel"] == "email"


def test_update_writes_messages_with_the_thread_or_not_at_all():
    thread, _ = _thread()
    draft = thread_store.PendingMessage(
        direction="outbound",
        role="draft",
        body_text="Which order is this about?",
        metadata=DraftMetadata(source="synthesized", action=Action.ASK_CLARIFYING_QUESTIONS),
    )
    thread_store.update_thread(thread["id"], thread["version"], messages=[draft], state=ThreadState.AWAITING_INFO)
    stored = thread_store.list_messages(thread["id"], direction="outbound")
    assert [m["id"] for m in stored] == [draft.id]

    late = thread_store.PendingMessage(direction="outbound", body_text="Too late")
    with pytest.raises(thread_store.StaleThreadError):
        thread_store.update_thread(thread["id"], thread["version"], messages=[late], state=ThreadState.RESOLVED)
    assert len(thread_store.list_messages(thread["id"], direction="outbound")) == 1


def test_list_threads_skips_archived():
    open_thread, _ = _thread("ext-open")
    closed, _ = _thread("ext-closed")
    thread_store.update_thread(closed["id"], closed["version"], is_archived=True)
    assert [t["id"] for t in thread_store.list_threads()] == [open_thread["id"]]
    assert len(thread_store.list_threads(include_archived=True)) == 2
