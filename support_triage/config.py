import os
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Optional, Tuple


def _parse_int_default(default: int, *names: str) -> int:
    for name in names:
        raw = os.environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            return int(raw)
        except ValueError:
            continue
    return default


def _parse_float_default(default: float, *names: str) -> float:
    for name in names:
        raw = os.environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            return float(raw)
        except ValueError:
            continue
    return default


def _parse_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


_DATA_DIR = Path(__file__).resolve().parent.parent / "data"

DB_PATH = os.environ.get("TRIAGE_DB_PATH", str(_DATA_DIR / "triage.db"))
AUDIT_LOG_PATH = os.environ.get("AUDIT_LOG_PATH", str(_DATA_DIR / "audit.log"))
ORDER_RECORDS_PATH = os.environ.get("ORDER_RECORDS_PATH", str(_DATA_DIR / "order_records.xlsx"))

CLASSIFIER_MODE = (os.environ.get("CLASSIFIER_MODE") or "rules").lower()
DRAFT_MODE = (os.environ.get("DRAFT_MODE") or "template").lower()

OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL")
OLLAMA_HOST = os.environ.get("OLLAMA_HOST", "http://127.0.0.1:11434")
OLLAMA_TIMEOUT = _parse_float_default(60.0, "OLLAMA_TIMEOUT")
OLLAMA_OPTIONS = os.environ.get("OLLAMA_OPTIONS")
TEMP = _parse_float_default(0.0, "MODEL_TEMP", "TEMP")
MAX_TOKENS = _parse_int_default(512, "MODEL_MAX_TOKENS", "MAX_TOKENS")

TRUSTED_SENDERS = _parse_list(os.environ.get("TRUSTED_SENDERS"))
INTERNAL_DOMAINS = _parse_list(os.environ.get("INTERNAL_DOMAINS"))
AGENT_SIGNATURE_NAME = os.environ.get("AGENT_SIGNATURE_NAME") or "Lina"
DISALLOWED_SIGNERS = _parse_list(os.environ.get("DISALLOWED_SIGNERS") or "Rob,Robert")
HUMAN_HANDLING_TIMEOUT_HOURS = _parse_int_default(48, "HUMAN_HANDLING_TIMEOUT_HOURS")

REQUIRE_API_KEY = (os.environ.get("REQUIRE_API_KEY") or "false").lower() == "true"
INGEST_API_KEY: Optional[str] = _require_env("INGEST_API_KEY") if REQUIRE_API_KEY else os.environ.get("INGEST_API_KEY")


@dataclass(frozen=True)
class TriageSettings:
    """Per-deployment knobs handed to the orchestrator at construction."""

    trusted_senders: FrozenSet[str] = frozenset()
    internal_domains: FrozenSet[str] = frozenset()
    signature_name: str = "Lina"
    disallowed_signers: Tuple[str, ...] = ("rob", "robert")
    confidence_floor: float = 0.5
    loop_threshold: int = 2
    context_messages: int = 3
    human_handling_timeout_hours: int = 48

    @classmethod
    def from_env(cls) -> "TriageSettings":
        return cls(
            trusted_senders=frozenset(TRUSTED_SENDERS),
            internal_domains=frozenset(INTERNAL_DOMAINS),
            signature_name=AGENT_SIGNATURE_NAME,
            disallowed_signers=DISALLOWED_SIGNERS,
            human_handling_timeout_hours=HUMAN_HANDLING_TIMEOUT_HOURS,
        )

    @property
    def signature(self) -> str:
        return f"– {self.signature_name}"

    def is_internal_sender(self, identifier: Optional[str]) -> bool:
        if not identifier:
            return False
        address = bare_address(identifier)
        if address in self.trusted_senders:
            return True
        domain = address.rsplit("@", 1)[-1] if "@" in address else ""
        return bool(domain) and domain in self.internal_domains


def bare_address(identifier: str) -> str:
    value = identifier.strip().lower()
    if "<" in value and value.endswith(">"):
        value = value[value.rfind("<") + 1 : -1]
    return value.strip()
