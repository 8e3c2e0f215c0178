from __future__ import annotations

from ralph.agents.base import AgentAdapter, AgentKind


class CodexAgent(AgentAdapter):
    kind = AgentKind.CODEX

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "exec", "--full-auto", *self.extra_args, prompt]
