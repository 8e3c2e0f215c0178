"""Append-only progress log (``.ralph/progress.md``).

Each iteration adds one markdown block::

    ## Iteration 1 - US-001 - 2026-01-01T00:00:00+00:00
    - story: US-001
    - title: Create baseline file
    - agent: codex
    - result: pass
    ...
    - check: PASS docs/US-001.txt: exact text matches

Blocks are never rewritten. ``read_records`` parses them back.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

ProgressResult = Literal["pass", "fail", "aborted", "interrupted"]

HEADER = "# Ralph Progress Log\n"
BLOCK_PATTERN = re.compile(r"^## Iteration (?P<iteration>\d+) - (?P<story>\S+) - (?P<at>\S+)$")
FIELD_PATTERN = re.compile(r"^- (?P<key>[a-z_]+): ?(?P<value>.*)$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _one_line(value: object) -> str:
    return " ".join(str(value).split())


@dataclass(frozen=True, slots=True)
class ProgressRecord:
    iteration: int
    story_id: str
    title: str
    agent: str
    result: ProgressResult
    verification: str = ""
    checks: tuple[tuple[bool, str], ...] = ()
    gates: str = ""
    commit: str = ""
    dry_run: bool = False
    duration_seconds: float | None = None
    note: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)

    def render(self) -> str:
        lines = [
            f"## Iteration {self.iteration} - {self.story_id} - {self.timestamp}",
            f"- story: {self.story_id}",
            f"- title: {_one_line(self.title)}",
            f"- agent: {self.agent}",
            f"- result: {self.result}",
            f"- dry_run: {'yes' if self.dry_run else 'no'}",
        ]
        if self.duration_seconds is not None:
            lines.append(f"- duration_seconds: {self.duration_seconds:.1f}")
        if self.verification:
            lines.append(f"- verification: {_one_line(self.verification)}")
        if self.gates:
            lines.append(f"- gates: {_one_line(self.gates)}")
        if self.commit:
            lines.append(f"- commit: {_one_line(self.commit)}")
        if self.note:
            lines.append(f"- note: {_one_line(self.note)}")
        for passed, message in self.checks:
            lines.append(f"- check: {'PASS' if passed else 'FAIL'} {_one_line(message)}")
        return "\n".join(lines) + "\n"


class ProgressLogger:
    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, record: ProgressRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists() or self.path.stat().st_size == 0
        with self.path.open("a", encoding="utf-8") as handle:
            if new_file:
                handle.write(HEADER)
                handle.write(f"Started: {_utcnow_iso()}\n")
            handle.write("\n")
            handle.write(record.render())
            handle.flush()
            os.fsync(handle.fileno())

    def tail(self, lines: int = 40) -> str:
        if lines <= 0 or not self.path.exists():
            return ""
        content = self.path.read_text(encoding="utf-8").splitlines()
        return "\n".join(content[-lines:])

    def records(self) -> list[dict[str, Any]]:
        return read_records(self.path)


def read_records(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.rstrip()
        heading = BLOCK_PATTERN.match(line)
        if heading:
            current = {
                "iteration": int(heading.group("iteration")),
                "story": heading.group("story"),
                "timestamp": heading.group("at"),
                "checks": [],
            }
            records.append(current)
            continue
        if current is None:
            continue
        item = FIELD_PATTERN.match(line)
        if not item:
            continue
        key, value = item.group("key"), item.group("value")
        if key == "check":
            current["checks"].append(value)
        else:
            current[key] = value
    return records
