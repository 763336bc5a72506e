#!/usr/bin/env python3
"""Return threads stuck in human handling past the timeout to the pipeline."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from support_triage.config import TriageSettings
from support_triage.thread_ops import return_stale_threads


def main() -> None:
    parser = argparse.ArgumentParser(description="Sweep stale human-handling threads")
    parser.add_argument("--timeout-hours", type=int, help="Override HUMAN_HANDLING_TIMEOUT_HOURS")
    args = parser.parse_args()

    settings = TriageSettings.from_env()
    if args.timeout_hours is not None:
        settings = replace(settings, human_handling_timeout_hours=args.timeout_hours)

    report = return_stale_threads(settings=settings)
    print(json.dumps(report.to_dict(), indent=2))
    if report.errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
