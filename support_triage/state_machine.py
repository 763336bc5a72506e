"""Thread lifecycle state machine.

``next_state`` is the only way the pipeline computes a thread's state. It is
an ordered rule list; the first rule that applies wins. Operator-initiated
changes go through ``is_valid_manual_transition`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from .domain import ESCALATION_ACTIONS, Action, ThreadState
from .intents import AUTOMATED_EMAIL, CHARGEBACK_THREAT, CLOSING_INTENTS, HIGH_RISK_INTENTS, LEGAL_SAFETY_RISK, THANK_YOU_CLOSE, VENDOR_SPAM


class InvalidTransitionError(ValueError):
    pass


@dataclass(frozen=True)
class Transition:
    state: ThreadState
    rule: str


def evaluate(
    current: ThreadState,
    action: Action,
    intent: Optional[str],
    policy_blocked: bool = False,
    missing_required_info: bool = False,
) -> Transition:
    if intent in CLOSING_INTENTS:
        return Transition(ThreadState.RESOLVED, "closing_intent")
    if action in ESCALATION_ACTIONS:
        return Transition(ThreadState.ESCALATED, "escalation_action")
    if intent in HIGH_RISK_INTENTS:
        return Transition(ThreadState.ESCALATED, "high_risk_intent")
    if policy_blocked:
        return Transition(ThreadState.ESCALATED, "policy_blocked")
    if missing_required_info:
        return Transition(ThreadState.AWAITING_INFO, "missing_required_info")
    if current == ThreadState.AWAITING_INFO:
        return Transition(ThreadState.IN_PROGRESS, "info_received")
    if current == ThreadState.ESCALATED:
        return Transition(ThreadState.ESCALATED, "escalation_sticky")
    if current == ThreadState.RESOLVED:
        return Transition(ThreadState.IN_PROGRESS, "reopened")
    if action in (Action.ASK_CLARIFYING_QUESTIONS, Action.SEND_PREAPPROVED_MACRO):
        return Transition(ThreadState.IN_PROGRESS, "reply_sent")
    return Transition(current, "unchanged")


def next_state(
    current: ThreadState,
    action: Action,
    intent: Optional[str],
    policy_blocked: bool = False,
    missing_required_info: bool = False,
) -> ThreadState:
    return evaluate(current, action, intent, policy_blocked, missing_required_info).state


_CLOSING_REASONS = {
    THANK_YOU_CLOSE: "Customer sent thank you message",
    VENDOR_SPAM: "Closed as vendor spam",
    AUTOMATED_EMAIL: "Closed as automated message",
}
_HIGH_RISK_REASONS = {
    CHARGEBACK_THREAT: "Chargeback threat detected - requires immediate attention",
    LEGAL_SAFETY_RISK: "Legal/safety risk detected - requires human review",
}


def transition_reason(
    current: ThreadState,
    action: Action,
    intent: Optional[str],
    policy_blocked: bool = False,
    missing_required_info: bool = False,
) -> str:
    """Explain, for audit display, why ``next_state`` produced its result."""
    transition = evaluate(current, action, intent, policy_blocked, missing_required_info)
    rule = transition.rule
    if rule == "closing_intent":
        return _CLOSING_REASONS.get(intent or "", "Conversation closed")
    if rule == "escalation_action":
        if intent in _HIGH_RISK_REASONS:
            return _HIGH_RISK_REASONS[intent]
        if policy_blocked:
            return "Draft contained blocked policy language"
        return "Escalated for human review"
    if rule == "high_risk_intent":
        return _HIGH_RISK_REASONS[intent or ""]
    if rule == "policy_blocked":
        return "Draft contained blocked policy language"
    if rule == "missing_required_info":
        return "Missing required information from customer"
    if rule == "info_received":
        return "Customer provided additional information"
    if rule == "reopened":
        return "Thread reopened due to new customer message"
    return f"Transitioned from {current.value} to {transition.state.value}"


MANUAL_TRANSITIONS: Dict[ThreadState, FrozenSet[ThreadState]] = {
    ThreadState.NEW: frozenset(
        {ThreadState.AWAITING_INFO, ThreadState.IN_PROGRESS, ThreadState.ESCALATED, ThreadState.RESOLVED}
    ),
    ThreadState.AWAITING_INFO: frozenset({ThreadState.IN_PROGRESS, ThreadState.ESCALATED, ThreadState.RESOLVED}),
    ThreadState.IN_PROGRESS: frozenset({ThreadState.AWAITING_INFO, ThreadState.ESCALATED, ThreadState.RESOLVED}),
    ThreadState.ESCALATED: frozenset({ThreadState.IN_PROGRESS, ThreadState.RESOLVED}),
    ThreadState.RESOLVED: frozenset({ThreadState.IN_PROGRESS}),
}


def is_valid_manual_transition(from_state: ThreadState, to_state: ThreadState) -> bool:
    return to_state in MANUAL_TRANSITIONS.get(from_state, frozenset())


def ensure_manual_transition(from_state: ThreadState, to_state: ThreadState) -> None:
    if not is_valid_manual_transition(from_state, to_state):
        raise InvalidTransitionError(f"Invalid state transition {from_state.value} -> {to_state.value}")


@dataclass(frozen=True)
class StateInfo:
    label: str
    description: str
    priority: int


STATE_METADATA: Dict[ThreadState, StateInfo] = {
    ThreadState.NEW: StateInfo("New", "Thread just created, not yet processed", 1),
    ThreadState.AWAITING_INFO: StateInfo("Awaiting Info", "Waiting for customer to provide required information", 2),
    ThreadState.IN_PROGRESS: StateInfo("In Progress", "Actively being worked on", 3),
    ThreadState.ESCALATED: StateInfo("Escalated", "Requires human attention", 0),
    ThreadState.RESOLVED: StateInfo("Resolved", "Issue resolved, thread closed", 4),
}


def states_by_priority() -> Tuple[ThreadState, ...]:
    return tuple(sorted(STATE_METADATA, key=lambda state: STATE_METADATA[state].priority))
