from ralph.state.backlog import (
    BacklogDocument,
    SchemaError,
    Story,
    StoryStatus,
    load_backlog,
    mark_status,
    reset_stories,
    save_backlog,
)
from ralph.state.commits import CommitError, CommitManager, CommitOutcome
from ralph.state.progress import ProgressLogger, ProgressRecord, read_records

__all__ = [
    "BacklogDocument",
    "CommitError",
    "CommitManager",
    "CommitOutcome",
    "ProgressLogger",
    "ProgressRecord",
    "SchemaError",
    "Story",
    "StoryStatus",
    "load_backlog",
    "mark_status",
    "read_records",
    "reset_stories",
    "save_backlog",
]
