"""Pick the next story to build from a backlog."""

from __future__ import annotations

from typing import Literal

from ralph.state.backlog import BacklogDocument, Story, StoryStatus

IdleState = Literal["exhausted", "deadlocked"]


def is_eligible(document: BacklogDocument, story: Story) -> bool:
    if story.status != StoryStatus.OPEN:
        return False
    stories = document.by_id()
    return all(
        dep_id in stories and stories[dep_id].status == StoryStatus.DONE
        for dep_id in story.depends_on
    )


def eligible_stories(document: BacklogDocument) -> list[Story]:
    return [story for story in document.stories if is_eligible(document, story)]


def next_eligible(document: BacklogDocument) -> Story | None:
    """First open story, in document order, whose dependencies are all done."""
    for story in document.stories:
        if is_eligible(document, story):
            return story
    return None


def blocked_by(document: BacklogDocument, story: Story) -> list[str]:
    stories = document.by_id()
    return [
        dep_id
        for dep_id in story.depends_on
        if dep_id not in stories or stories[dep_id].status != StoryStatus.DONE
    ]


def classify_idle(document: BacklogDocument) -> IdleState:
    """Tell a finished backlog apart from one that is stuck.

    Only a backlog where every story is done is exhausted. Open stories behind
    unfinished dependencies, stale in_progress stories and failed stories all
    need an operator and count as deadlocked.
    """
    if all(story.status == StoryStatus.DONE for story in document.stories):
        return "exhausted"
    return "deadlocked"
