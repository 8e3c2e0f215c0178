"""Acceptance criteria parsing and read-only verification against a working tree.

Criteria are plain strings. A small fixed grammar turns some of them into
file assertions; everything else is kept as a note for the agent prompt:

    File "docs/US-001.txt" exists with the exact text "US-001 complete"
    File "docs/US-001.txt" contains "complete"
    File "docs/US-001.txt" exists
    File "build/tmp.log" does not exist

Stories without any assertion pass by convention and are reported as
``unverified`` so the caller can flag them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ralph.state.backlog import Story

logger = logging.getLogger(__name__)

CheckKind = Literal["exact_text", "contains", "exists", "absent"]
NoteKind = Literal["example", "negative", "note"]

_PATH = r'file\s+"(?P<path>[^"]+)"\s+'
ASSERTION_PATTERNS: list[tuple[CheckKind, re.Pattern[str]]] = [
    (
        "exact_text",
        re.compile(_PATH + r'exists\s+with\s+the\s+exact\s+text\s+"(?P<text>.*)"\s*\.?$', re.I),
    ),
    (
        "contains",
        re.compile(
            _PATH + r'(?:exists\s+and\s+)?contains\s+(?:the\s+text\s+)?"(?P<text>.*)"\s*\.?$',
            re.I,
        ),
    ),
    ("absent", re.compile(_PATH + r"does\s+not\s+exist\s*\.?$", re.I)),
    ("exists", re.compile(_PATH + r"exists\s*\.?$", re.I)),
]
ASSERTION_LOOKALIKE = re.compile(r'^file\s+"', re.I)
NOTE_PREFIXES: list[tuple[NoteKind, re.Pattern[str]]] = [
    ("example", re.compile(r"^example\s*:", re.I)),
    ("negative", re.compile(r"^negative\s+case\s*:", re.I)),
]


@dataclass(frozen=True, slots=True)
class Criterion:
    text: str
    kind: CheckKind | NoteKind
    path: str | None = None
    expected: str | None = None

    @property
    def checkable(self) -> bool:
        return self.path is not None


@dataclass(frozen=True, slots=True)
class CheckOutcome:
    criterion: str
    passed: bool
    message: str


@dataclass(slots=True)
class VerificationResult:
    passed: bool
    details: list[CheckOutcome] = field(default_factory=list)
    unverified: bool = False

    @property
    def failures(self) -> list[CheckOutcome]:
        return [detail for detail in self.details if not detail.passed]

    def summary(self) -> str:
        if self.unverified:
            return "no machine-checkable criteria"
        passed = sum(1 for detail in self.details if detail.passed)
        return f"{passed}/{len(self.details)} checks passed"


def parse_criterion(text: str) -> Criterion:
    stripped = text.strip()
    for kind, pattern in ASSERTION_PATTERNS:
        match = pattern.match(stripped)
        if match:
            groups = match.groupdict()
            return Criterion(
                text=text,
                kind=kind,
                path=groups["path"].strip(),
                expected=groups.get("text"),
            )
    for kind, pattern in NOTE_PREFIXES:
        if pattern.match(stripped):
            return Criterion(text=text, kind=kind)
    if ASSERTION_LOOKALIKE.match(stripped):
        logger.warning(
            "Criterion looks like a file check but does not parse; kept as a note: %s", text
        )
    return Criterion(text=text, kind="note")


def parse_criteria(story: Story) -> list[Criterion]:
    return [parse_criterion(text) for text in story.acceptance_criteria]


def _resolve_inside(root: Path, relative: str) -> Path | None:
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        return None
    return candidate


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _strip_one_newline(content: str) -> str:
    if content.endswith("\r\n"):
        return content[:-2]
    if content.endswith("\n"):
        return content[:-1]
    return content


def check_criterion(criterion: Criterion, working_directory: Path) -> CheckOutcome:
    if criterion.path is None:
        raise ValueError(f"Criterion is not machine-checkable: {criterion.text!r}")
    root = working_directory.resolve()
    target = _resolve_inside(root, criterion.path)
    if target is None:
        return CheckOutcome(
            criterion.text, False, f"{criterion.path}: path escapes the working directory"
        )

    if criterion.kind == "absent":
        if target.exists():
            return CheckOutcome(criterion.text, False, f"{criterion.path}: exists but should not")
        return CheckOutcome(criterion.text, True, f"{criterion.path}: absent")

    if not target.is_file():
        return CheckOutcome(criterion.text, False, f"{criterion.path}: missing")
    if criterion.kind == "exists":
        return CheckOutcome(criterion.text, True, f"{criterion.path}: exists")

    content = _read_text(target)
    if content is None:
        return CheckOutcome(criterion.text, False, f"{criterion.path}: not readable as UTF-8")
    expected = criterion.expected or ""
    if criterion.kind == "exact_text":
        actual = _strip_one_newline(content)
        if actual == expected:
            return CheckOutcome(criterion.text, True, f"{criterion.path}: exact text matches")
        return CheckOutcome(
            criterion.text,
            False,
            f"{criterion.path}: expected {expected!r}, found {actual[:200]!r}",
        )
    if expected in content:
        return CheckOutcome(criterion.text, True, f"{criterion.path}: contains {expected!r}")
    return CheckOutcome(criterion.text, False, f"{criterion.path}: does not contain {expected!r}")


def verify(story: Story, working_directory: Path) -> VerificationResult:
    checks = [criterion for criterion in parse_criteria(story) if criterion.checkable]
    if not checks:
        return VerificationResult(passed=True, details=[], unverified=True)
    details = [check_criterion(criterion, working_directory) for criterion in checks]
    return VerificationResult(passed=all(detail.passed for detail in details), details=details)
