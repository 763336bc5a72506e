import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.security import APIKeyHeader

from . import config, thread_ops, thread_store
from .metrics_api import router as metrics_router
from .orchestrator import TriageOrchestrator
from .domain import ThreadState
from .schemas import ArchiveRequest, HumanHandlingRequest, InboundMessage, ManualTransitionRequest, TriageOutcome
from .state_machine import STATE_METADATA, InvalidTransitionError
from .verification import VerificationUnavailableError

app = FastAPI(title="support-triage")
API_KEY_NAME = "X-API-KEY"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)

_ORCHESTRATOR: Optional[TriageOrchestrator] = None


def get_orchestrator() -> TriageOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = TriageOrchestrator()
    return _ORCHESTRATOR


def _get_api_key(api_key_header: str = Security(api_key_header)) -> str:
    if not config.REQUIRE_API_KEY:
        return api_key_header or ""
    expected = config.INGEST_API_KEY
    if not expected:
        raise HTTPException(status_code=503, detail="API key not configured")
    if api_key_header != expected:
        raise HTTPException(status_code=403, detail="Invalid or missing API Key")
    return api_key_header


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except thread_store.ThreadNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (InvalidTransitionError, thread_store.StaleThreadError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except VerificationUnavailableError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def _check_db() -> bool:
    try:
        conn = thread_store.get_connection()
        conn.execute("SELECT 1")
        conn.close()
        return True
    except sqlite3.Error:
        return False


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    db_ok = _check_db()
    if not db_ok:
        raise HTTPException(status_code=503, detail={"db": db_ok})
    return {"status": "ok", "db": db_ok, "classifier": config.CLASSIFIER_MODE, "drafts": config.DRAFT_MODE}


@app.post("/ingest", response_model=TriageOutcome, dependencies=[Depends(_get_api_key)])
def ingest(message: InboundMessage) -> TriageOutcome:
    with _domain_errors():
        return get_orchestrator().process(message)


def _state_info(state: str) -> Dict[str, Any]:
    info = STATE_METADATA[ThreadState(state)]
    return {"label": info.label, "description": info.description, "priority": info.priority}


@app.get("/threads")
def list_threads(include_archived: bool = False, limit: int = 100) -> Dict[str, Any]:
    threads = thread_store.list_threads(include_archived=include_archived, limit=limit)
    for thread in threads:
        thread["state_info"] = _state_info(thread["state"])
    return {"items": threads, "count": len(threads)}


@app.get("/threads/{thread_id}")
def get_thread(thread_id: str) -> Dict[str, Any]:
    with _domain_errors():
        thread = thread_store.get_thread(thread_id)
    thread["state_info"] = _state_info(thread["state"])
    thread["messages"] = thread_store.list_messages(thread_id)
    thread["events"] = thread_store.list_events(thread_id)
    return thread


@app.post("/threads/{thread_id}/state", dependencies=[Depends(_get_api_key)])
def transition_thread(thread_id: str, payload: ManualTransitionRequest) -> Dict[str, Any]:
    with _domain_errors():
        return thread_ops.transition_thread(thread_id, payload.to_state, payload.actor, payload.note)


@app.post("/threads/{thread_id}/human-handling", dependencies=[Depends(_get_api_key)])
def set_human_handling(thread_id: str, payload: HumanHandlingRequest) -> Dict[str, Any]:
    with _domain_errors():
        return thread_ops.set_human_handling(thread_id, payload.enabled, payload.handler)


@app.post("/threads/{thread_id}/archive", dependencies=[Depends(_get_api_key)])
def archive_thread(thread_id: str, payload: ArchiveRequest) -> Dict[str, Any]:
    with _domain_errors():
        return thread_ops.archive_thread(thread_id, payload.actor)


@app.post("/maintenance/stale-handling", dependencies=[Depends(_get_api_key)])
def sweep_stale_handling() -> Dict[str, Any]:
    report = thread_ops.return_stale_threads(settings=get_orchestrator().settings)
    return report.to_dict()


app.include_router(metrics_router)
