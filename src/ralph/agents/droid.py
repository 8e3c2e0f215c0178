from __future__ import annotations

from ralph.agents.base import AgentAdapter, AgentKind


class DroidAgent(AgentAdapter):
    kind = AgentKind.DROID

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "exec", "--auto", "high", *self.extra_args, prompt]
