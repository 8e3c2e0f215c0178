from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ralph.state.backlog import Story

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_FORMAT = "feat: {story_id} - {story_title}"


class CommitError(RuntimeError):
    """Raised when a story's commit cannot be created."""


@dataclass(frozen=True, slots=True)
class CommitOutcome:
    committed: bool
    sha: str | None = None
    message: str = ""
    skipped: bool = False

    def describe(self) -> str:
        if self.skipped:
            return "disabled"
        if self.committed and self.sha:
            return f"{self.sha[:10]} {self.message}"
        return "none"


class CommitManager:
    """Stages and commits the working tree once per completed story.

    ``bookkeeping_paths`` are files the loop itself writes (backlog, progress
    log). They are committed along with the story but do not count as work.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        bookkeeping_paths: list[Path] | None = None,
        message_format: str = DEFAULT_MESSAGE_FORMAT,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.message_format = message_format
        self._bookkeeping = [path.resolve() for path in bookkeeping_paths or []]
        self._toplevel: Path | None = None

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise CommitError("git executable not found.") from exc
        if check and proc.returncode != 0:
            raise CommitError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_git_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except CommitError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def toplevel(self) -> Path:
        """Root of the enclosing git work tree; status paths are relative to it."""
        if self._toplevel is None:
            proc = self._run_git(["rev-parse", "--show-toplevel"])
            self._toplevel = Path(proc.stdout.strip()).resolve()
        return self._toplevel

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def changed_paths(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all", "--", "."])
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if path:
                paths.append(path)
        return paths

    def _is_bookkeeping(self, relative: str) -> bool:
        return (self.toplevel() / relative).resolve() in self._bookkeeping

    def work_paths(self) -> list[str]:
        return [path for path in self.changed_paths() if not self._is_bookkeeping(path)]

    def message_for(self, story: Story) -> str:
        return self.message_format.format(story_id=story.id, story_title=story.title)

    def commit(self, story: Story, enabled: bool = True) -> CommitOutcome:
        if not enabled:
            return CommitOutcome(committed=False, skipped=True)
        if not self.is_git_repo():
            raise CommitError(f"Not a git work tree: {self.repo_root}")

        if not self.work_paths():
            raise CommitError(
                f"Story {story.id} passed verification but left nothing to commit."
            )

        message = self.message_for(story)
        self._run_git(["add", "-A", "--", "."])
        self._run_git(["commit", "--no-verify", "-m", message, "--", "."])
        sha = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        logger.info("Committed %s as %s", story.id, sha[:10])
        return CommitOutcome(committed=True, sha=sha, message=message)

    def commit_count(self) -> int:
        proc = self._run_git(["rev-list", "--count", "HEAD"], check=False)
        if proc.returncode != 0:
            return 0
        return int(proc.stdout.strip() or "0")

    def commits_mentioning(self, story_id: str) -> list[str]:
        proc = self._run_git(
            ["log", "--format=%H", "--fixed-strings", f"--grep={story_id}"], check=False
        )
        if proc.returncode != 0:
            return []
        return [line for line in proc.stdout.splitlines() if line.strip()]
