#!/usr/bin/env python3
"""Feed a JSONL file of inbound messages through the triage pipeline."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterator, Tuple

sys.path.append(str(Path(__file__).resolve().parents[1]))

from pydantic import ValidationError

from support_triage.orchestrator import TriageOrchestrator
from support_triage.schemas import InboundMessage


def read_messages(path: Path) -> Iterator[Tuple[int, InboundMessage]]:
    with path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                yield line_no, InboundMessage.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as exc:
                raise SystemExit(f"{path}:{line_no}: invalid inbound message: {exc}") from exc


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay inbound messages through the triage pipeline")
    parser.add_argument("input", type=Path, help="JSONL file, one inbound message per line")
    parser.add_argument("--show-draft", action="store_true", help="Include the draft text in the output")
    args = parser.parse_args()

    if not args.input.exists():
        raise SystemExit(f"Input not found: {args.input}")

    orchestrator = TriageOrchestrator()
    count = 0
    for _, message in read_messages(args.input):
        outcome = orchestrator.process(message)
        exclude = None if args.show_draft else {"draft"}
        print(json.dumps(outcome.model_dump(mode="json", exclude=exclude), ensure_ascii=False))
        count += 1
    print(f"Processed {count} messages", file=sys.stderr)


if __name__ == "__main__":
    main()
