from __future__ import annotations

from ralph.agents.base import AgentAdapter, AgentKind


class ClaudeAgent(AgentAdapter):
    kind = AgentKind.CLAUDE

    def build_command(self, prompt: str) -> list[str]:
        return [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
            *self.extra_args,
        ]
