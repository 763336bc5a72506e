"""In-process counters and timings for the triage pipeline."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

_COUNTERS: Dict[str, int] = defaultdict(int)
_TIMINGS: Dict[str, List[float]] = defaultdict(list)

ESCALATION_SPIKE_MARGIN = 5


def incr(name: str, amount: int = 1) -> None:
    _COUNTERS[name] += amount


def timing(name: str, duration_seconds: float) -> None:
    _TIMINGS[name].append(duration_seconds)


def reset() -> None:
    _COUNTERS.clear()
    _TIMINGS.clear()


def snapshot() -> Dict[str, object]:
    return {
        "counters": dict(_COUNTERS),
        "timings": {k: {"count": len(v), "p50_ms": _percentile_ms(v, 50), "p95_ms": _percentile_ms(v, 95)} for k, v in _TIMINGS.items()},
        "spikes": _detect_spikes(),
    }


def _percentile_ms(samples: List[float], pct: float) -> float:
    if not samples:
        return 0.0
    ordered = sorted(samples)
    idx = int(len(ordered) * (pct / 100))
    idx = min(max(idx, 0), len(ordered) - 1)
    return ordered[idx] * 1000


def _detect_spikes() -> Dict[str, object]:
    # Alert when escalations and policy blocks outpace automatic handling.
    escalations = _COUNTERS.get("action.ESCALATE_WITH_DRAFT", 0) + _COUNTERS.get("action.ESCALATE", 0)
    blocks = _COUNTERS.get("policy_gate.blocked", 0)
    automatic = sum(
        _COUNTERS.get(f"action.{name}", 0)
        for name in ("NO_REPLY", "ASK_CLARIFYING_QUESTIONS", "SEND_PREAPPROVED_MACRO")
    )
    return {
        "escalation_spike": escalations + blocks > automatic + ESCALATION_SPIKE_MARGIN,
        "escalations": escalations,
        "policy_blocks": blocks,
        "automatic": automatic,
    }
