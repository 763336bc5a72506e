from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel

from . import config
from .domain import ThreadState

DB_PATH = Path(config.DB_PATH)

SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    external_id TEXT,
    subject TEXT DEFAULT '',
    channel TEXT DEFAULT 'email',
    state TEXT NOT NULL DEFAULT 'NEW',
    last_intent TEXT,
    intents TEXT DEFAULT '[]',
    human_handling INTEGER DEFAULT 0,
    human_handler TEXT,
    human_handling_started_at TEXT,
    is_archived INTEGER DEFAULT 0,
    summary TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    direction TEXT NOT NULL,
    role TEXT,
    channel TEXT,
    from_identifier TEXT,
    to_identifier TEXT,
    subject TEXT,
    body_text TEXT,
    metadata TEXT,
    blocked INTEGER DEFAULT 0,
    message_date TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_threads_external ON threads(external_id, is_archived);
CREATE INDEX IF NOT EXISTS idx_threads_human ON threads(human_handling, human_handling_started_at);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, seq);
CREATE INDEX IF NOT EXISTS idx_events_thread ON events(thread_id, seq);
"""

ALLOWED_UPDATE_FIELDS = {
    "state",
    "last_intent",
    "intents",
    "human_handling",
    "human_handler",
    "human_handling_started_at",
    "is_archived",
    "summary",
    "subject",
}

_INITIALISED: set = set()


class ThreadNotFoundError(LookupError):
    pass


class StaleThreadError(RuntimeError):
    """The thread changed between read and write."""


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def get_connection() -> sqlite3.Connection:
    """Create a connection with sane defaults for concurrent access."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    if str(DB_PATH) not in _INITIALISED:
        conn.executescript(SCHEMA)
        conn.commit()
        _INITIALISED.add(str(DB_PATH))
    return conn


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


def _thread_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = _row_to_dict(row)
    data["intents"] = json.loads(data.get("intents") or "[]")
    data["human_handling"] = bool(data.get("human_handling"))
    data["is_archived"] = bool(data.get("is_archived"))
    return data


def _message_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = _row_to_dict(row)
    data["metadata"] = json.loads(data["metadata"]) if data.get("metadata") else {}
    data["blocked"] = bool(data.get("blocked"))
    return data


def _event_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = _row_to_dict(row)
    data["payload"] = json.loads(data["payload"])
    return data


def _dump(value: Union[BaseModel, Dict[str, Any], None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    return json.dumps(value, ensure_ascii=False, default=str)


def _maybe_json_dump(key: str, value: Any) -> Any:
    if key == "intents":
        return json.dumps(list(value or []), ensure_ascii=False)
    if key in {"human_handling", "is_archived"}:
        return 1 if value else 0
    if isinstance(value, ThreadState):
        return value.value
    return value


def create_thread(*, external_id: Optional[str], subject: str = "", channel: str = "email") -> Dict[str, Any]:
    thread_id = str(uuid4())
    now = _now_iso()
    conn = get_connection()
    try:
        conn.execute(
            """
            INSERT INTO threads (id, external_id, subject, channel, state, intents, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, '[]', 0, ?, ?)
            """,
            (thread_id, external_id, subject or "", channel, ThreadState.NEW.value, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    return get_thread(thread_id)


def get_thread(thread_id: str) -> Dict[str, Any]:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        raise ThreadNotFoundError(f"Thread {thread_id} not found")
    return _thread_from_row(row)


def find_thread_by_external_id(external_id: str) -> Optional[Dict[str, Any]]:
    """Return the newest non-archived thread for a channel thread id."""
    conn = get_connection()
    try:
        row = conn.execute(
            """
            SELECT * FROM threads
            WHERE external_id = ? AND is_archived = 0
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (external_id,),
        ).fetchone()
    finally:
        conn.close()
    return _thread_from_row(row) if row else None


def resolve_thread(*, external_id: Optional[str], subject: str, channel: str) -> Tuple[Dict[str, Any], bool]:
    """Return (thread, created?) for an inbound message."""
    if external_id:
        existing = find_thread_by_external_id(external_id)
        if existing:
            return existing, False
    return create_thread(external_id=external_id, subject=subject, channel=channel), True


@dataclass
class PendingMessage:
    """A message row to be written, either alone or inside a thread update."""

    direction: str
    body_text: str
    role: Optional[str] = None
    channel: Optional[str] = None
    from_identifier: Optional[str] = None
    to_identifier: Optional[str] = None
    subject: Optional[str] = None
    metadata: Union[BaseModel, Dict[str, Any], None] = None
    blocked: bool = False
    message_date: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self) -> None:
        if self.direction not in {"inbound", "outbound"}:
            raise ValueError(f"Unknown message direction: {self.direction}")


def _insert_message(conn: sqlite3.Connection, thread_id: str, message: PendingMessage) -> str:
    conn.execute(
        """
        INSERT INTO messages (
            id, thread_id, direction, role, channel, from_identifier, to_identifier,
            subject, body_text, metadata, blocked, message_date, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            message.id,
            thread_id,
            message.direction,
            message.role,
            message.channel,
            message.from_identifier,
            message.to_identifier,
            message.subject,
            message.body_text or "",
            _dump(message.metadata),
            1 if message.blocked else 0,
            message.message_date,
            _now_iso(),
        ),
    )
    return message.id


def insert_message(thread_id: str, **fields: Any) -> str:
    """Append a message row and return its id. Messages are never updated."""
    message = PendingMessage(**fields)
    conn = get_connection()
    try:
        _insert_message(conn, thread_id, message)
        conn.commit()
    finally:
        conn.close()
    return message.id


def list_messages(thread_id: str, *, direction: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return a thread's messages in chronological order."""
    query = "SELECT * FROM messages WHERE thread_id = ?"
    params: List[Any] = [thread_id]
    if direction:
        query += " AND direction = ?"
        params.append(direction)
    query += " ORDER BY seq ASC"
    conn = get_connection()
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_message_from_row(row) for row in rows]


def recent_messages(thread_id: str, *, limit: int = 3, exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return up to ``limit`` most recent messages, oldest first."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT * FROM messages
            WHERE thread_id = ? AND id != ?
            ORDER BY seq DESC
            LIMIT ?
            """,
            (thread_id, exclude_id or "", max(limit, 1)),
        ).fetchall()
    finally:
        conn.close()
    return [_message_from_row(row) for row in reversed(rows)]


def outbound_bodies(thread_id: str) -> List[str]:
    """Bodies of outbound messages that could have reached the customer."""
    return [row["body_text"] or "" for row in list_messages(thread_id, direction="outbound") if not row["blocked"]]


def _insert_event(conn: sqlite3.Connection, thread_id: str, payload: BaseModel) -> str:
    event_id = str(uuid4())
    event_type = getattr(payload, "type")
    conn.execute(
        "INSERT INTO events (id, thread_id, type, payload, created_at) VALUES (?, ?, ?, ?, ?)",
        (event_id, thread_id, event_type, _dump(payload), _now_iso()),
    )
    return event_id


def append_event(thread_id: str, payload: BaseModel) -> str:
    """Append an audit event; events are never updated or deleted."""
    conn = get_connection()
    try:
        event_id = _insert_event(conn, thread_id, payload)
        conn.commit()
    finally:
        conn.close()
    return event_id


def list_events(thread_id: str, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    query = "SELECT * FROM events WHERE thread_id = ?"
    params: List[Any] = [thread_id]
    if event_type:
        query += " AND type = ?"
        params.append(event_type)
    query += " ORDER BY seq ASC"
    conn = get_connection()
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_event_from_row(row) for row in rows]


def update_thread(
    thread_id: str,
    expected_version: int,
    *,
    events: Iterable[BaseModel] = (),
    messages: Iterable[PendingMessage] = (),
    **fields: Any,
) -> int:
    """Write ``fields`` only if the thread is still at ``expected_version``.

    Any ``messages`` and ``events`` are appended in the same transaction.
    Returns the new version; raises StaleThreadError when another writer got
    there first.
    """
    updates: Dict[str, Any] = {}
    for key, value in fields.items():
        if key not in ALLOWED_UPDATE_FIELDS:
            raise ValueError(f"Field {key} cannot be updated")
        updates[key] = _maybe_json_dump(key, value)
    updates["updated_at"] = _now_iso()

    assignments = ", ".join(f"{col} = ?" for col in updates)
    params = list(updates.values()) + [thread_id, expected_version]

    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            f"UPDATE threads SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
            params,
        )
        if cursor.rowcount == 0:
            exists = conn.execute("SELECT version FROM threads WHERE id = ?", (thread_id,)).fetchone()
            conn.rollback()
            if exists is None:
                raise ThreadNotFoundError(f"Thread {thread_id} not found")
            raise StaleThreadError(
                f"Thread {thread_id} is at version {exists['version']}, expected {expected_version}"
            )
        for message in messages:
            _insert_message(conn, thread_id, message)
        for payload in events:
            _insert_event(conn, thread_id, payload)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return expected_version + 1


def list_stale_human_handling(cutoff_iso: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT * FROM threads
            WHERE human_handling = 1
              AND is_archived = 0
              AND human_handling_started_at IS NOT NULL
              AND human_handling_started_at < ?
            ORDER BY human_handling_started_at ASC
            """,
            (cutoff_iso,),
        ).fetchall()
    finally:
        conn.close()
    return [_thread_from_row(row) for row in rows]


def list_threads(*, include_archived: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
    query = "SELECT * FROM threads"
    if not include_archived:
        query += " WHERE is_archived = 0"
    query += " ORDER BY updated_at DESC LIMIT ?"
    conn = get_connection()
    try:
        rows = conn.execute(query, (max(limit, 1),)).fetchall()
    finally:
        conn.close()
    return [_thread_from_row(row) for row in rows]
