"""Canned customer-facing texts and internal escalation notes.

Every customer-facing text ends with the agent signature so it passes the
policy gate unchanged.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence

from .domain import MissingInfo
from .intents import CHARGEBACK_THREAT

MAX_QUESTIONS = 3

ESCALATION_NOTICE = "I've passed this to a specialist on our team and they'll be in touch with you directly."
INTERNAL_NOTES_HEADER = "--- Internal notes (not sent to the customer) ---"


def _signed(body: str, signature: str) -> str:
    return f"{body.strip()}\n\n{signature}"


def docs_video_mismatch(signature: str, name: Optional[str] = None) -> str:
    greeting = f"Hey {name}," if name else "Hey,"
    return _signed(
        f"""{greeting}

That video shows an example email some customers receive, but not everyone will get that exact message depending on when the unit shipped and which update path applies.

Reply with:
1. which unit you have (Apex / G-Series / Cluster)
2. the order email or order number
3. what you see when you try to update (error or screenshot if possible)

Once I have that I can point you to the correct update method for your exact setup.""",
        signature,
    )


def firmware_access_clarify(signature: str, name: Optional[str] = None) -> str:
    return _signed(
        """Hey, I can help, but I need 3 quick details so I don't point you at the wrong file:

1. Which unit are you updating (Apex / G-Series / Cluster)?
2. What exactly happens when the site "kicks you off" (login loop, error message, blank page, etc.)?
3. What email did you order with (or your order number)?""",
        signature,
    )


MACROS: Dict[str, Callable[..., str]] = {
    "DOCS_VIDEO_MISMATCH": docs_video_mismatch,
    "FIRMWARE_ACCESS_ISSUE": firmware_access_clarify,
}

# Intents whose macro may be sent as the answer itself, not just as a question.
ANSWER_MACRO_INTENTS = frozenset({"DOCS_VIDEO_MISMATCH"})


def macro_for(intent: str, signature: str, name: Optional[str] = None) -> Optional[str]:
    builder = MACROS.get(intent)
    if builder is None:
        return None
    return builder(signature, name=name)


def missing_info_prompt(missing: Sequence[MissingInfo], signature: str) -> str:
    """Ask for missing details, required ones first, at most three questions."""
    if not missing:
        return ""
    ordered = [item for item in missing if item.required] + [item for item in missing if not item.required]
    items = "\n".join(f"{index}. {item.label}" for index, item in enumerate(ordered[:MAX_QUESTIONS], start=1))
    return _signed(
        "Hey! I'd love to help with this. Just need a quick bit of info:\n\n"
        f"{items}\n\n"
        "Once I have that, I can dig into this for you!",
        signature,
    )


def verification_request(signature: str) -> str:
    return _signed(
        "Hey! I'd love to help you with this.\n\n"
        "To pull up your order info, could you share your order number? You can find it in your "
        "confirmation email (looks like #12345 or SWA-12345).",
        signature,
    )


def verification_not_found(signature: str) -> str:
    return _signed(
        """Hmm, I couldn't find that order in our system. A few things that might help:

- Double-check the order number (sometimes there's a typo)
- Was it placed under a different email address? If so, replying from that address helps
- Check your confirmation email for the exact order number

Mind taking another look and sending it over?""",
        signature,
    )


def verification_flagged_note(flags: Sequence[str]) -> str:
    listed = ", ".join(flags) if flags else "unspecified"
    return (
        "[ESCALATED - Customer flagged for human review]\n\n"
        f"Flags on file: {listed}.\n"
        "Check the customer notes and order history before replying."
    )


STATIC_ESCALATION_NOTES: Dict[str, str] = {
    CHARGEBACK_THREAT: (
        "Draft only (escalate): Customer mentions chargeback/dispute. Do not promise. "
        "Ask for order # + summarize situation."
    ),
}


def static_escalation_note(intent: str) -> Optional[str]:
    return STATIC_ESCALATION_NOTES.get(intent)


def loop_escalation_draft(signature: str) -> str:
    return _signed(f"I'm having trouble finding the right answer for you. {ESCALATION_NOTICE}", signature)


def policy_blocked_note(reasons: Sequence[str], original: str) -> str:
    return f"Policy gate blocked draft: {'; '.join(reasons)}\n\nOriginal draft:\n{original}"


def degraded_classification_note(reason: str) -> str:
    return f"Automatic classification unavailable ({reason}). Please review this message and reply manually."


def with_escalation_notice(draft: Optional[str], signature: str) -> str:
    """Put a neutral holding reply first and keep any reviewer notes below it."""
    if draft and ESCALATION_NOTICE in draft:
        return draft
    holding = _signed(f"Thanks for your patience. {ESCALATION_NOTICE}", signature)
    if not draft or not draft.strip():
        return holding
    return f"{holding}\n\n{INTERNAL_NOTES_HEADER}\n{draft.strip()}"


def stale_handling_apology(signature: str, name: Optional[str] = None) -> str:
    greeting = f"Hi {name}," if name else "Hi there,"
    return _signed(
        f"""{greeting}

I'm really sorry for the delay in getting back to you. That's not the experience we want you to have.

Is this still something you need help with? If so, let me know and I'll make it a priority.""",
        signature,
    )
