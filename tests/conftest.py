import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from support_triage import config, metrics, thread_store


@pytest.fixture(autouse=True)
def _isolate_storage(tmp_path, monkeypatch):
    """Keep the thread store and audit log inside the test's tmp dir."""

    monkeypatch.setattr(thread_store, "DB_PATH", tmp_path / "triage.db")
    monkeypatch.setattr(config, "AUDIT_LOG_PATH", str(tmp_path / "audit.log"))
    monkeypatch.setattr(config, "ORDER_RECORDS_PATH", str(tmp_path / "order_records.xlsx"))
    metrics.reset()


@pytest.fixture(autouse=True)
def force_deterministic_modes(monkeypatch):
    """Force rule classification and template drafts to avoid model drift."""
    monkeypatch.setattr(config, "CLASSIFIER_MODE", "rules")
    monkeypatch.setattr(config, "DRAFT_MODE", "template")
    monkeypatch.setattr(config, "OLLAMA_MODEL", None)
    monkeypatch.setattr(config, "REQUIRE_API_KEY", False)
