"""Operator-facing thread actions and the stale human-handling sweep.

Every write here goes through ``thread_store.update_thread`` with the version
read just before, so a concurrent triage run or operator action surfaces as
``StaleThreadError`` instead of a lost update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from . import metrics, thread_store
from .audit import log_exception, log_function_call
from .config import TriageSettings
from .domain import Action, ThreadState
from .macros import stale_handling_apology
from .schemas import (
    DraftMetadata,
    HumanHandlingChangedPayload,
    ManualTransitionPayload,
    StaleHandlingTimeoutPayload,
    StateChange,
    ThreadArchivedPayload,
)
from .state_machine import ensure_manual_transition

logger = logging.getLogger(__name__)


@dataclass
class StaleSweepReport:
    returned: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"returned": list(self.returned), "errors": dict(self.errors)}


def transition_thread(thread_id: str, to_state: ThreadState, actor: str, note: Optional[str] = None) -> Dict[str, Any]:
    """Move a thread to ``to_state`` on an operator's behalf."""
    thread = thread_store.get_thread(thread_id)
    current = ThreadState(thread["state"])
    ensure_manual_transition(current, to_state)
    thread_store.update_thread(
        thread_id,
        thread["version"],
        events=[
            ManualTransitionPayload(
                state_transition=StateChange(
                    from_state=current, to_state=to_state, reason=note or f"Manual transition by {actor}"
                ),
                actor=actor,
                note=note,
            )
        ],
        state=to_state,
    )
    metrics.incr("manual_transition")
    log_function_call("transition_thread", thread_id=thread_id, from_state=current, to_state=to_state, actor=actor)
    return thread_store.get_thread(thread_id)


def take_over(thread_id: str, handler: Optional[str] = None) -> Dict[str, Any]:
    """Hand the thread to a human; the pipeline only observes until release."""
    thread = thread_store.get_thread(thread_id)
    thread_store.update_thread(
        thread_id,
        thread["version"],
        events=[HumanHandlingChangedPayload(enabled=True, handler=handler)],
        human_handling=True,
        human_handler=handler,
        human_handling_started_at=thread_store.to_iso(datetime.now(timezone.utc)),
    )
    log_function_call("take_over", thread_id=thread_id, handler=handler)
    return thread_store.get_thread(thread_id)


def release(thread_id: str) -> Dict[str, Any]:
    thread = thread_store.get_thread(thread_id)
    thread_store.update_thread(
        thread_id,
        thread["version"],
        events=[HumanHandlingChangedPayload(enabled=False, handler=thread.get("human_handler"))],
        human_handling=False,
        human_handler=None,
        human_handling_started_at=None,
    )
    log_function_call("release", thread_id=thread_id)
    return thread_store.get_thread(thread_id)


def set_human_handling(thread_id: str, enabled: bool, handler: Optional[str] = None) -> Dict[str, Any]:
    return take_over(thread_id, handler) if enabled else release(thread_id)


def archive_thread(thread_id: str, actor: str = "system") -> Dict[str, Any]:
    """Hide a thread from external-id lookup. Nothing is deleted."""
    thread = thread_store.get_thread(thread_id)
    if thread["is_archived"]:
        return thread
    thread_store.update_thread(
        thread_id,
        thread["version"],
        events=[ThreadArchivedPayload(actor=actor)],
        is_archived=True,
    )
    log_function_call("archive_thread", thread_id=thread_id, actor=actor)
    return thread_store.get_thread(thread_id)


def _return_one(thread: Dict[str, Any], settings: TriageSettings) -> None:
    previous = ThreadState(thread["state"])
    draft = thread_store.PendingMessage(
        direction="outbound",
        role="draft",
        body_text=stale_handling_apology(settings.signature),
        channel=thread.get("channel"),
        subject=thread.get("subject"),
        metadata=DraftMetadata(source="stale_handling", action=Action.ASK_CLARIFYING_QUESTIONS),
    )
    thread_store.update_thread(
        thread["id"],
        thread["version"],
        messages=[draft],
        events=[
            StaleHandlingTimeoutPayload(
                handler=thread.get("human_handler"),
                timeout_hours=settings.human_handling_timeout_hours,
                started_at=thread.get("human_handling_started_at"),
                state_transition=StateChange(
                    from_state=previous,
                    to_state=ThreadState.IN_PROGRESS,
                    reason=f"Human handling exceeded {settings.human_handling_timeout_hours}h",
                ),
                draft_message_id=draft.id,
            )
        ],
        human_handling=False,
        human_handler=None,
        human_handling_started_at=None,
        state=ThreadState.IN_PROGRESS,
    )


def return_stale_threads(
    now: Optional[datetime] = None, settings: Optional[TriageSettings] = None
) -> StaleSweepReport:
    """Return threads abandoned in human handling to the pipeline.

    A failure on one thread is recorded in the report and the sweep moves on.
    """
    settings = settings or TriageSettings.from_env()
    now = now or datetime.now(timezone.utc)
    cutoff = thread_store.to_iso(now - timedelta(hours=settings.human_handling_timeout_hours))
    report = StaleSweepReport()

    for thread in thread_store.list_stale_human_handling(cutoff):
        try:
            _return_one(thread, settings)
        except Exception as exc:  # one bad thread must not stop the sweep
            report.errors[thread["id"]] = f"{type(exc).__name__}: {exc}"
            log_exception("stale_handling.failed", error=exc, thread_id=thread["id"])
            continue
        report.returned.append(thread["id"])

    metrics.incr("stale_handling.returned", len(report.returned))
    logger.info(
        "stale human-handling sweep finished",
        extra={"extra_data": {"returned": len(report.returned), "errors": len(report.errors), "cutoff": cutoff}},
    )
    return report
