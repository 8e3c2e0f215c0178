from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class SchemaError(RuntimeError):
    """Raised when the backlog document is missing, malformed, or inconsistent."""


class StoryStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: Any, *, story_id: str = "?") -> StoryStatus:
        if raw is None or raw == "":
            return cls.OPEN
        normalized = str(raw).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise SchemaError(f"Story {story_id} has unknown status: {raw!r}") from exc


STORY_KEYS = {"id", "title", "description", "status", "dependsOn", "acceptanceCriteria"}
DOCUMENT_KEYS = {"version", "project", "qualityGates", "stories"}


@dataclass(slots=True)
class Story:
    id: str
    title: str
    description: str = ""
    status: StoryStatus = StoryStatus.OPEN
    depends_on: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any, index: int) -> Story:
        if not isinstance(payload, dict):
            raise SchemaError(f"Story at position {index} is not an object.")
        story_id = payload.get("id")
        if not isinstance(story_id, str) or not story_id.strip():
            raise SchemaError(f"Story at position {index} has no id.")
        story_id = story_id.strip()
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            raise SchemaError(f"Story {story_id} has no title.")
        depends_on = payload.get("dependsOn", [])
        if not isinstance(depends_on, list) or not all(isinstance(i, str) for i in depends_on):
            raise SchemaError(f"Story {story_id}: dependsOn must be a list of ids.")
        criteria = payload.get("acceptanceCriteria", [])
        if not isinstance(criteria, list) or not all(isinstance(c, str) for c in criteria):
            raise SchemaError(f"Story {story_id}: acceptanceCriteria must be a list of strings.")
        description = payload.get("description") or ""
        return cls(
            id=story_id,
            title=title.strip(),
            description=str(description),
            status=StoryStatus.parse(payload.get("status"), story_id=story_id),
            depends_on=[dep.strip() for dep in depends_on],
            acceptance_criteria=list(criteria),
            extra={k: v for k, v in payload.items() if k not in STORY_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "title": self.title}
        if self.description:
            payload["description"] = self.description
        payload["status"] = self.status.value
        payload["dependsOn"] = list(self.depends_on)
        payload["acceptanceCriteria"] = list(self.acceptance_criteria)
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class BacklogDocument:
    version: int = 1
    project: str = ""
    quality_gates: list[str] = field(default_factory=list)
    stories: list[Story] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, story_id: str) -> Story | None:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def by_id(self) -> dict[str, Story]:
        return {story.id: story for story in self.stories}

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StoryStatus}
        for story in self.stories:
            counts[story.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "project": self.project,
            "qualityGates": list(self.quality_gates),
            "stories": [story.to_dict() for story in self.stories],
        }
        payload.update(self.extra)
        return payload


def find_cycle(stories: list[Story]) -> list[str] | None:
    """Return one dependency cycle as a list of ids (first id repeated at the end).

    Depth-first with an explicit stack so long dependency chains stay within
    the interpreter's recursion limit.
    """
    graph = {story.id: story.depends_on for story in stories}
    done: set[str] = set()
    for start in graph:
        if start in done:
            continue
        path = [start]
        on_path = {start}
        pending = [iter(graph[start])]
        while pending:
            dep_id = next(pending[-1], None)
            if dep_id is None:
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                pending.pop()
                continue
            if dep_id in done:
                continue
            if dep_id in on_path:
                return path[path.index(dep_id) :] + [dep_id]
            path.append(dep_id)
            on_path.add(dep_id)
            pending.append(iter(graph.get(dep_id, [])))
    return None


def parse_backlog(data: Any) -> BacklogDocument:
    if not isinstance(data, dict):
        raise SchemaError("Backlog document must be a JSON object.")
    raw_stories = data.get("stories")
    if not isinstance(raw_stories, list):
        raise SchemaError("Backlog document has no 'stories' list.")
    gates = data.get("qualityGates", [])
    if not isinstance(gates, list) or not all(isinstance(g, str) for g in gates):
        raise SchemaError("qualityGates must be a list of command strings.")
    try:
        version = int(data.get("version", 1))
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"Backlog version is not an integer: {data.get('version')!r}") from exc

    stories = [Story.from_dict(item, index) for index, item in enumerate(raw_stories)]
    seen: set[str] = set()
    for story in stories:
        if story.id in seen:
            raise SchemaError(f"Duplicate story id: {story.id}")
        seen.add(story.id)
    for story in stories:
        for dep_id in story.depends_on:
            if dep_id not in seen:
                raise SchemaError(f"Story {story.id} depends on unknown story {dep_id}")
            if dep_id == story.id:
                raise SchemaError(f"Story {story.id} depends on itself.")

    cycle = find_cycle(stories)
    if cycle:
        raise SchemaError("Dependency cycle: " + " -> ".join(cycle))

    return BacklogDocument(
        version=version,
        project=str(data.get("project") or ""),
        quality_gates=[gate for gate in gates if gate.strip()],
        stories=stories,
        extra={k: v for k, v in data.items() if k not in DOCUMENT_KEYS},
    )


def load_backlog(path: Path) -> BacklogDocument:
    if not path.exists():
        raise SchemaError(f"Backlog document not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SchemaError(f"Backlog document cannot be read ({path}): {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Backlog document is not valid JSON ({path}): {exc}") from exc
    return parse_backlog(data)


def save_backlog(document: BacklogDocument, path: Path) -> None:
    """Write the document atomically: temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(document.to_dict(), ensure_ascii=False, indent=2) + "\n"
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def mark_status(document: BacklogDocument, story_id: str, status: StoryStatus) -> Story:
    story = document.get(story_id)
    if story is None:
        raise SchemaError(f"Unknown story id: {story_id}")
    story.status = StoryStatus(status)
    return story


def reset_stories(
    document: BacklogDocument,
    from_status: StoryStatus,
    to_status: StoryStatus = StoryStatus.OPEN,
) -> list[str]:
    reset: list[str] = []
    for story in document.stories:
        if story.status == from_status:
            story.status = to_status
            reset.append(story.id)
    return reset
