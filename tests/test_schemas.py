import pytest
from pydantic import ValidationError

from support_triage.domain import Action, ThreadState
from support_triage.schemas import (
    DraftMetadata,
    InboundMessage,
    IntentClarifiedPayload,
    PolicyBlockedPayload,
    parse_event_payload,
    parse_message_metadata,
)


def test_inbound_accepts_body_alias_and_strips():
    message = InboundMessage.model_validate({"channel": "chat", "body": "  hi there  ", "external_id": "c-1"})
    assert message.body_text == "hi there"
    assert message.subject == ""
    assert message.metadata == {}


def test_inbound_rejects_unknown_fields_and_channels():
    with pytest.raises(ValidationError):
        InboundMessage.model_validate({"body_text": "hi", "priority": "high"})
    with pytest.raises(ValidationError):
        InboundMessage.model_validate({"body_text": "hi", "channel": "fax"})


def test_event_payloads_round_trip_by_type():
    payload = IntentClarifiedPayload(to=["ORDER_STATUS"], message_id="m-1")
    dumped = payload.model_dump(mode="json", by_alias=True)
    assert dumped["from"] == "UNKNOWN"
    assert isinstance(parse_event_payload(dumped), IntentClarifiedPayload)

    blocked = parse_event_payload({"type": "POLICY_BLOCKED", "message_id": "m-1", "violations": ["x"], "draft_source": "generated"})
    assert isinstance(blocked, PolicyBlockedPayload)

    with pytest.raises(ValidationError):
        parse_event_payload({"type": "SOMETHING_ELSE"})


def test_message_metadata_discriminated_by_kind():
    parsed = parse_message_metadata({"kind": "draft", "source": "macro", "action": "SEND_PREAPPROVED_MACRO"})
    assert isinstance(parsed, DraftMetadata)
    assert parsed.action == Action.SEND_PREAPPROVED_MACRO
    assert parsed.blocked is False


def test_state_values_are_stable():
    assert [state.value for state in ThreadState] == ["NEW", "AWAITING_INFO", "IN_PROGRESS", "ESCALATED", "RESOLVED"]


def test_inbound_null_metadata_becomes_empty():
    message = InboundMessage.model_validate({"body_text": "hi", "metadata": None})
    assert message.metadata == {}
