from __future__ import annotations

from pathlib import Path

from ralph.state.backlog import BacklogDocument, Story, StoryStatus

INSTRUCTIONS = """
## Rules
- Work only inside the current working directory.
- Implement the story so that every acceptance criterion holds.
- Criteria of the form File "<path>" exists with the exact text "<text>" are
  checked literally after you exit.
- Do not edit {backlog}; story status is managed for you.
- Do not commit; changes are committed after verification.
- Exit with status 0 only when the story is complete.
""".strip()


def _read_optional(path: Path | None) -> str:
    if path is None or not path.is_file():
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return ""


def render_story_prompt(
    document: BacklogDocument,
    story: Story,
    *,
    backlog_name: str = "prd.json",
    agents_md: Path | None = None,
    progress_tail: str = "",
) -> str:
    lines = [
        "You are an autonomous coding agent working on a software project.",
        "",
        f"Project: {document.project or 'unnamed'}",
        "",
        "## Story",
        f"ID: {story.id}",
        f"Title: {story.title}",
    ]
    if story.description:
        lines.extend(["", story.description.strip()])

    lines.extend(["", "## Acceptance criteria"])
    if story.acceptance_criteria:
        lines.extend(f"- {criterion}" for criterion in story.acceptance_criteria)
    else:
        lines.append("- (none given)")

    done = [
        dep_id
        for dep_id in story.depends_on
        if (dep := document.get(dep_id)) is not None and dep.status == StoryStatus.DONE
    ]
    if done:
        lines.extend(["", "## Completed prerequisites", ", ".join(done)])

    agents_text = _read_optional(agents_md)
    if agents_text:
        lines.extend(["", "## Repository guidance (AGENTS.md)", agents_text])

    if progress_tail.strip():
        lines.extend(["", "## Recent progress", progress_tail.strip()])

    lines.extend(["", INSTRUCTIONS.format(backlog=backlog_name)])
    return "\n".join(lines) + "\n"
