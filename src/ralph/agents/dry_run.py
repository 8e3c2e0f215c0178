from __future__ import annotations

from pathlib import Path

from ralph.agents.base import AgentAdapter, AgentKind, AgentOutcome, InvokeOptions
from ralph.state.backlog import Story


class DryRunAgent(AgentAdapter):
    """Stands in for any agent kind and reports success without spawning anything."""

    def __init__(self, kind: AgentKind, **kwargs) -> None:
        self.kind = kind
        super().__init__(**kwargs)

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "--dry-run", prompt]

    def available(self, cwd: Path | None = None) -> bool:
        return True

    async def invoke(
        self,
        story: Story,
        working_directory: Path,
        options: InvokeOptions,
    ) -> AgentOutcome:
        self._emit(
            {
                "event": "agent_dry_run",
                "agent": self.kind.value,
                "story_id": story.id,
            }
        )
        return AgentOutcome(
            agent=self.kind.value,
            exit_code=0,
            duration_seconds=0.0,
            dry_run=True,
            stdout_tail=f"dry run: {story.id}",
        )
