from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ralph.agents import (
    AgentAdapter,
    AgentExitedNonZero,
    AgentNotFound,
    AgentOutcome,
    AgentTimedOut,
    DryRunAgent,
    InvokeOptions,
    RetryPolicy,
    invoke_with_retries,
)
from ralph.config import RalphConfig
from ralph.gates import GateReport, run_gates
from ralph.prompts import render_story_prompt
from ralph.resolver import blocked_by, classify_idle, next_eligible
from ralph.state.backlog import (
    BacklogDocument,
    Story,
    StoryStatus,
    load_backlog,
    mark_status,
    reset_stories,
    save_backlog,
)
from ralph.state.commits import CommitError, CommitManager, CommitOutcome
from ralph.state.progress import ProgressLogger, ProgressRecord, ProgressResult
from ralph.verifier import VerificationResult, verify

logger = logging.getLogger(__name__)

LoopEventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class LoopState(str, Enum):
    SELECTING = "selecting"
    INVOKING = "invoking"
    VERIFYING = "verifying"
    GATING = "gating"
    COMMITTING = "committing"
    LOGGING = "logging"


class Termination(str, Enum):
    EXHAUSTED = "exhausted"
    BUDGETED = "budgeted"
    DEADLOCKED = "deadlocked"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"


EXIT_CODES = {
    Termination.EXHAUSTED: 0,
    Termination.BUDGETED: 0,
    Termination.DEADLOCKED: 1,
    Termination.ABORTED: 2,
    Termination.INTERRUPTED: 130,
}


@dataclass(slots=True)
class IterationResult:
    story_id: str
    status: StoryStatus
    record: ProgressRecord
    terminal: Termination | None = None
    message: str = ""
    unverified: bool = False


@dataclass(slots=True)
class RunSummary:
    termination: Termination
    iterations: int = 0
    selected: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    unverified: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    message: str = ""
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.termination]


class BuildLoop:
    """Runs stories from the backlog through agent, verifier, gates and commit.

    Only one story is in flight at a time. Everything a run mutates (the
    document, the iteration counter, the summary) is local to ``run``.
    """

    def __init__(
        self,
        repo_root: Path,
        agent: AgentAdapter,
        *,
        config: RalphConfig | None = None,
        commits: CommitManager | None = None,
        progress: ProgressLogger | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.agent = agent
        self.config = config or RalphConfig.default()
        self.backlog_path = self.config.backlog_path(self.repo_root)
        self.progress = progress or ProgressLogger(self.config.progress_path(self.repo_root))
        self.commits = commits or CommitManager(
            self.repo_root,
            bookkeeping_paths=[self.backlog_path, self.progress.path],
            message_format=self.config.workflow.commit_message_format,
        )
        self.event_hook = event_hook
        self.retry_policy = RetryPolicy(
            max_retries=max(0, int(self.config.agent.max_retries)),
            backoff_seconds=max(0.0, float(self.config.agent.retry_backoff_seconds)),
        )

    @property
    def dry_run(self) -> bool:
        return isinstance(self.agent, DryRunAgent)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _enter(self, state: LoopState, story: Story | None = None) -> None:
        logger.debug("State %s (%s)", state.value, story.id if story else "-")
        self._emit(
            {"event": "state", "state": state.value, "story_id": story.id if story else None}
        )

    def _persist(self, document: BacklogDocument) -> None:
        save_backlog(document, self.backlog_path)

    def _transition(self, document: BacklogDocument, story: Story, status: StoryStatus) -> None:
        mark_status(document, story.id, status)
        self._persist(document)
        logger.debug("Story %s -> %s", story.id, status.value)

    def _record(
        self,
        iteration: int,
        story: Story,
        result: ProgressResult,
        *,
        outcome: AgentOutcome | None = None,
        verification: VerificationResult | None = None,
        gates: GateReport | None = None,
        commit: CommitOutcome | None = None,
        note: str = "",
    ) -> ProgressRecord:
        gate_text = ""
        if gates is not None and gates.results:
            gate_text = "; ".join(
                f"{'PASS' if item.passed else 'FAIL'} {item.command} (exit {item.exit_code})"
                for item in gates.results
            )
        record = ProgressRecord(
            iteration=iteration,
            story_id=story.id,
            title=story.title,
            agent=self.agent.kind.value,
            result=result,
            verification=verification.summary() if verification is not None else "",
            checks=tuple(
                (detail.passed, detail.message)
                for detail in (verification.details if verification is not None else [])
            ),
            gates=gate_text,
            commit=commit.describe() if commit is not None else "",
            dry_run=self.dry_run,
            duration_seconds=outcome.duration_seconds if outcome is not None else None,
            note=note,
        )
        self.progress.append(record)
        return record

    def _prompt_for(self, document: BacklogDocument, story: Story) -> str:
        return render_story_prompt(
            document,
            story,
            backlog_name=self.backlog_path.name,
            agents_md=self.config.agents_md_path(self.repo_root),
            progress_tail=self.progress.tail(self.config.workflow.progress_tail_lines),
        )

    def _interrupted(self, iteration: int, story: Story, phase: str) -> None:
        self._record(
            iteration,
            story,
            "interrupted",
            note=f"interrupted while {phase}; story left in_progress",
        )
        logger.warning("Story %s interrupted while %s", story.id, phase)

    def _fail(
        self,
        document: BacklogDocument,
        story: Story,
        iteration: int,
        note: str,
        **record_fields: Any,
    ) -> IterationResult:
        self._transition(document, story, StoryStatus.FAILED)
        record = self._record(iteration, story, "fail", note=note, **record_fields)
        logger.warning("Story %s failed: %s", story.id, note)
        return IterationResult(story.id, StoryStatus.FAILED, record, message=note)

    async def run_iteration(
        self,
        document: BacklogDocument,
        story: Story,
        iteration: int,
        *,
        commit: bool = True,
    ) -> IterationResult:
        self._enter(LoopState.INVOKING, story)
        self._transition(document, story, StoryStatus.IN_PROGRESS)
        options = InvokeOptions(
            prompt=self._prompt_for(document, story),
            dry_run=self.dry_run,
            timeout_seconds=max(1.0, float(self.config.agent.timeout_seconds)),
        )
        try:
            outcome = await invoke_with_retries(
                self.agent,
                story,
                self.repo_root,
                options,
                self.retry_policy,
                event_hook=self.event_hook,
            )
        except AgentNotFound as exc:
            # Infrastructure fault: the story was never attempted.
            self._transition(document, story, StoryStatus.OPEN)
            record = self._record(iteration, story, "aborted", note=str(exc))
            return IterationResult(
                story.id, StoryStatus.OPEN, record, terminal=Termination.ABORTED, message=str(exc)
            )
        except AgentTimedOut as exc:
            return self._fail(document, story, iteration, f"agent timed out: {exc}")
        except AgentExitedNonZero as exc:
            return self._fail(document, story, iteration, f"agent failed: {exc}")
        except asyncio.CancelledError:
            self._interrupted(iteration, story, "invoking the agent")
            raise

        self._enter(LoopState.VERIFYING, story)
        verification = verify(story, self.repo_root)
        if not verification.passed:
            failing = "; ".join(detail.message for detail in verification.failures)
            return self._fail(
                document,
                story,
                iteration,
                f"acceptance criteria not met: {failing}",
                outcome=outcome,
                verification=verification,
            )
        note = ""
        if verification.unverified:
            note = "accepted without an independent check (no machine-checkable criteria)"
            logger.warning("Story %s %s", story.id, note)

        self._enter(LoopState.GATING, story)
        try:
            # Off the event loop so a cancellation lands while a gate is running.
            gates = await asyncio.to_thread(
                run_gates,
                document.quality_gates,
                self.repo_root,
                timeout_seconds=float(self.config.workflow.gate_timeout_seconds),
            )
        except asyncio.CancelledError:
            self._interrupted(iteration, story, "running quality gates")
            raise
        if not gates.passed:
            failed_gate = gates.failed_gate
            return self._fail(
                document,
                story,
                iteration,
                f"quality gate failed: {failed_gate.command if failed_gate else '?'}",
                outcome=outcome,
                verification=verification,
                gates=gates,
            )

        self._enter(LoopState.COMMITTING, story)
        self._transition(document, story, StoryStatus.DONE)
        try:
            commit_outcome = self.commits.commit(story, enabled=commit)
        except CommitError as exc:
            result = self._fail(
                document,
                story,
                iteration,
                f"commit failed: {exc}",
                outcome=outcome,
                verification=verification,
                gates=gates,
            )
            if self.config.workflow.commit_error_policy == "abort":
                result.terminal = Termination.ABORTED
            return result

        self._enter(LoopState.LOGGING, story)
        record = self._record(
            iteration,
            story,
            "pass",
            outcome=outcome,
            verification=verification,
            gates=gates,
            commit=commit_outcome,
            note=note,
        )
        logger.info("Story %s done", story.id)
        return IterationResult(
            story.id, StoryStatus.DONE, record, unverified=verification.unverified
        )

    def _preflight(self, *, commit: bool) -> str | None:
        if not self.agent.available(self.repo_root):
            return f"Agent binary not found on PATH: {self.agent.binary}"
        if commit and not self.commits.is_git_repo():
            return f"Commits are enabled but {self.repo_root} is not a git work tree."
        return None

    def _deadlock_message(self, document: BacklogDocument) -> str:
        blocked = []
        for story in document.stories:
            if story.status == StoryStatus.OPEN:
                blocked.append(f"{story.id} (waiting on {', '.join(blocked_by(document, story))})")
            elif story.status in {StoryStatus.IN_PROGRESS, StoryStatus.FAILED}:
                blocked.append(f"{story.id} ({story.status.value})")
        return "No eligible story; blocked: " + "; ".join(blocked)

    def _finish(self, summary: RunSummary, termination: Termination, message: str) -> RunSummary:
        summary.termination = termination
        summary.message = message
        summary.ended_at = _utcnow_iso()
        self._emit(
            {
                "event": "run_finished",
                "termination": termination.value,
                "iterations": summary.iterations,
                "message": message,
            }
        )
        if termination in {Termination.DEADLOCKED, Termination.ABORTED}:
            logger.error("Run %s: %s", termination.value, message)
        else:
            logger.info("Run %s: %s", termination.value, message)
        return summary

    async def run(
        self,
        count: int,
        *,
        commit: bool = True,
        retry_failed: bool = False,
    ) -> RunSummary:
        """Build up to ``count`` stories. ``SchemaError`` propagates before any iteration."""
        document = load_backlog(self.backlog_path)
        summary = RunSummary(termination=Termination.BUDGETED)

        preflight_error = self._preflight(commit=commit)
        if preflight_error:
            return self._finish(summary, Termination.ABORTED, preflight_error)

        summary.recovered = reset_stories(document, StoryStatus.IN_PROGRESS)
        if summary.recovered:
            logger.warning(
                "Re-opening stories left in_progress by an earlier run: %s",
                ", ".join(summary.recovered),
            )
        reopened: list[str] = []
        if retry_failed:
            reopened = reset_stories(document, StoryStatus.FAILED)
            if reopened:
                logger.info("Retrying failed stories: %s", ", ".join(reopened))
        if summary.recovered or reopened:
            self._persist(document)

        while summary.iterations < count:
            self._enter(LoopState.SELECTING)
            story = next_eligible(document)
            if story is None:
                if classify_idle(document) == "exhausted":
                    return self._finish(summary, Termination.EXHAUSTED, "Backlog complete.")
                return self._finish(
                    summary, Termination.DEADLOCKED, self._deadlock_message(document)
                )

            summary.iterations += 1
            summary.selected.append(story.id)
            self._emit(
                {"event": "story_selected", "story_id": story.id, "iteration": summary.iterations}
            )
            result = await self.run_iteration(
                document, story, summary.iterations, commit=commit
            )
            if result.status == StoryStatus.DONE:
                summary.completed.append(story.id)
                if result.unverified:
                    summary.unverified.append(story.id)
            elif result.status == StoryStatus.FAILED:
                summary.failed.append(story.id)
            self._emit(
                {
                    "event": "story_finished",
                    "story_id": story.id,
                    "status": result.status.value,
                    "message": result.message,
                }
            )
            if result.terminal is not None:
                return self._finish(summary, result.terminal, result.message)

        if classify_idle(document) == "exhausted":
            return self._finish(summary, Termination.EXHAUSTED, "Backlog complete.")
        return self._finish(
            summary, Termination.BUDGETED, f"Iteration budget of {count} reached."
        )
