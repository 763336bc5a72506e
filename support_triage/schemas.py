from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .domain import Action, ThreadState

Channel = Literal["email", "web_form", "chat", "voice"]


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="forbid")

    channel: Channel = "email"
    external_id: Optional[str] = Field(None, max_length=255)
    subject: str = Field("", max_length=998)
    body_text: str = Field(..., max_length=100_000)
    from_identifier: Optional[str] = Field(None, max_length=320)
    to_identifier: Optional[str] = Field(None, max_length=320)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    message_date: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _coalesce_body(cls, values: Any) -> Any:
        if isinstance(values, dict) and "body_text" not in values:
            for alias in ("body", "text"):
                if alias in values:
                    values = dict(values)
                    values["body_text"] = values.pop(alias)
                    break
        return values

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class TriageOutcome(BaseModel):
    thread_id: str
    message_id: str
    intent: str
    confidence: float
    action: Action
    draft: Optional[str] = None
    state: ThreadState
    previous_state: ThreadState
    human_handling: bool = False
    summary: str = ""


class StateChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_state: ThreadState = Field(..., alias="from")
    to_state: ThreadState = Field(..., alias="to")
    reason: str


# Event payloads: one model per event type, discriminated by ``type``.


class MessageReceivedPayload(BaseModel):
    type: Literal["MESSAGE_RECEIVED"] = "MESSAGE_RECEIVED"
    message_id: str
    channel: Channel
    from_identifier: Optional[str] = None
    subject: str = ""


class DecisionTracePayload(BaseModel):
    type: Literal["DECISION_TRACE"] = "DECISION_TRACE"
    message_id: str
    intent: str
    confidence: float
    action: Action
    draft: Optional[str] = None
    channel: Channel
    state_transition: StateChange
    note: Optional[str] = None
    classification: Optional[Dict[str, Any]] = None
    verification: Optional[Dict[str, Any]] = None
    clarification_loop: Optional[Dict[str, Any]] = None
    policy_violations: List[str] = Field(default_factory=list)
    summary: str = ""


class HumanObservationPayload(BaseModel):
    type: Literal["HUMAN_OBSERVATION"] = "HUMAN_OBSERVATION"
    message_id: str
    handler: Optional[str] = None
    note: str = "observation_mode"


class IntentClarifiedPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["INTENT_CLARIFIED"] = "INTENT_CLARIFIED"
    from_intent: str = Field("UNKNOWN", alias="from")
    to: List[str]
    message_id: str


class ClassificationOverridePayload(BaseModel):
    type: Literal["CLASSIFICATION_OVERRIDE"] = "CLASSIFICATION_OVERRIDE"
    message_id: str
    original_intent: str
    recorded_intent: str
    reason: str


class PolicyBlockedPayload(BaseModel):
    type: Literal["POLICY_BLOCKED"] = "POLICY_BLOCKED"
    message_id: str
    violations: List[str]
    draft_source: str


class PromiseEntry(BaseModel):
    category: str
    matched_text: str
    description: str


class PromisedActionPayload(BaseModel):
    type: Literal["PROMISED_ACTION"] = "PROMISED_ACTION"
    message_id: Optional[str] = None
    promises: List[PromiseEntry]
    promise_count: int
    categories: List[str]
    draft_snippet: Optional[str] = None


class CollaboratorFailedPayload(BaseModel):
    type: Literal["VERIFICATION_FAILED", "GENERATION_FAILED", "CLASSIFICATION_FAILED"]
    message_id: str
    error: str


class ManualTransitionPayload(BaseModel):
    type: Literal["MANUAL_TRANSITION"] = "MANUAL_TRANSITION"
    state_transition: StateChange
    actor: str
    note: Optional[str] = None


class HumanHandlingChangedPayload(BaseModel):
    type: Literal["HUMAN_HANDLING_CHANGED"] = "HUMAN_HANDLING_CHANGED"
    enabled: bool
    handler: Optional[str] = None


class StaleHandlingTimeoutPayload(BaseModel):
    type: Literal["STALE_HANDLING_TIMEOUT"] = "STALE_HANDLING_TIMEOUT"
    handler: Optional[str] = None
    timeout_hours: int
    started_at: Optional[str] = None
    state_transition: StateChange
    draft_message_id: Optional[str] = None


class ThreadArchivedPayload(BaseModel):
    type: Literal["THREAD_ARCHIVED"] = "THREAD_ARCHIVED"
    actor: str


EventPayload = Annotated[
    Union[
        MessageReceivedPayload,
        DecisionTracePayload,
        HumanObservationPayload,
        IntentClarifiedPayload,
        ClassificationOverridePayload,
        PolicyBlockedPayload,
        PromisedActionPayload,
        CollaboratorFailedPayload,
        ManualTransitionPayload,
        HumanHandlingChangedPayload,
        StaleHandlingTimeoutPayload,
        ThreadArchivedPayload,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(EventPayload)


def parse_event_payload(data: Dict[str, Any]) -> BaseModel:
    return _EVENT_ADAPTER.validate_python(data)


# Message metadata: structured for messages the system writes, opaque for channel data.


class InboundMetadata(BaseModel):
    kind: Literal["inbound"] = "inbound"
    channel_data: Dict[str, Any] = Field(default_factory=dict)


DraftSource = Literal["macro", "synthesized", "generated", "verification_prompt", "escalation", "stale_handling"]


class DraftMetadata(BaseModel):
    kind: Literal["draft"] = "draft"
    source: DraftSource
    action: Action
    blocked: bool = False
    policy_violations: List[str] = Field(default_factory=list)


class AdminMetadata(BaseModel):
    kind: Literal["admin"] = "admin"
    author: str


MessageMetadata = Annotated[Union[InboundMetadata, DraftMetadata, AdminMetadata], Field(discriminator="kind")]

_METADATA_ADAPTER: TypeAdapter = TypeAdapter(MessageMetadata)


def parse_message_metadata(data: Dict[str, Any]) -> BaseModel:
    return _METADATA_ADAPTER.validate_python(data)


class ManualTransitionRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    to_state: ThreadState
    actor: str = Field(..., min_length=1, max_length=120)
    note: Optional[str] = Field(None, max_length=2000)


class HumanHandlingRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    enabled: bool
    handler: Optional[str] = Field(None, max_length=120)


class ArchiveRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    actor: str = Field(..., min_length=1, max_length=120)
