from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ralph.state.backlog import Story

logger = logging.getLogger(__name__)

AgentEventHook = Callable[[dict[str, Any]], None]


class AgentKind(str, Enum):
    CODEX = "codex"
    CLAUDE = "claude"
    DROID = "droid"


class AgentError(RuntimeError):
    """Raised when an agent process cannot produce an outcome."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentNotFound(AgentError):
    """The agent binary is not available. Fatal for the whole run."""

    def __init__(self, message: str, *, agent: str | None = None) -> None:
        super().__init__(message, agent=agent, retriable=False)


class AgentExitedNonZero(AgentError):
    """The agent process returned a failure code."""


class AgentTimedOut(AgentExitedNonZero):
    """The agent process exceeded its wall-clock budget and was killed."""


@dataclass(slots=True)
class InvokeOptions:
    prompt: str = ""
    dry_run: bool = False
    timeout_seconds: float = 1800.0
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AgentOutcome:
    agent: str
    exit_code: int
    duration_seconds: float
    dry_run: bool = False
    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def _tail(raw: bytes | None, limit: int = 2000) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace").strip()[-limit:]


def command_available(executable: str, cwd: Path | None = None) -> bool:
    if not executable.strip():
        return False
    check = subprocess.run(
        ["sh", "-c", f"command -v {shlex.quote(executable)} >/dev/null 2>&1"],
        cwd=cwd,
        text=True,
        capture_output=True,
    )
    return check.returncode == 0


class AgentAdapter(ABC):
    """One coding agent backend.

    Subclasses only decide the command line; spawning, waiting, timeouts,
    cancellation and exit-status translation are shared here.
    """

    kind: AgentKind

    def __init__(
        self,
        binary: str | None = None,
        *,
        extra_args: list[str] | None = None,
        event_hook: AgentEventHook | None = None,
    ) -> None:
        self.binary = binary or self.kind.value
        self.extra_args = list(extra_args or [])
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv that hands ``prompt`` to the agent."""

    def available(self, cwd: Path | None = None) -> bool:
        return command_available(self.binary, cwd)

    async def invoke(
        self,
        story: Story,
        working_directory: Path,
        options: InvokeOptions,
    ) -> AgentOutcome:
        command = self.build_command(options.prompt)
        env = os.environ.copy()
        env.update(options.env)
        self._emit(
            {
                "event": "agent_start",
                "agent": self.kind.value,
                "story_id": story.id,
                "command": command[:3],
            }
        )
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentNotFound(
                f"{self.kind.value} binary not found: {self.binary}", agent=self.kind.value
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=options.timeout_seconds
            )
        except TimeoutError as exc:
            await self._terminate(process)
            self._emit(
                {"event": "agent_timeout", "agent": self.kind.value, "story_id": story.id}
            )
            raise AgentTimedOut(
                f"{self.kind.value} timed out after {options.timeout_seconds:.1f}s "
                f"on story {story.id}",
                agent=self.kind.value,
            ) from exc
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        duration = time.monotonic() - started
        return_code = process.returncode if process.returncode is not None else -1
        self._emit(
            {
                "event": "agent_exit",
                "agent": self.kind.value,
                "story_id": story.id,
                "exit_code": return_code,
                "duration_seconds": round(duration, 3),
            }
        )
        if return_code != 0:
            raise AgentExitedNonZero(
                f"{self.kind.value} failed with exit code {return_code}: {_tail(stderr, 400)}",
                agent=self.kind.value,
                exit_code=return_code,
            )
        return AgentOutcome(
            agent=self.kind.value,
            exit_code=return_code,
            duration_seconds=duration,
            stdout_tail=_tail(stdout),
            stderr_tail=_tail(stderr),
        )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            logger.warning("Agent process %s did not exit after kill", process.pid)
