from __future__ import annotations

from pathlib import Path

from ralph.agents.base import (
    AgentAdapter,
    AgentError,
    AgentEventHook,
    AgentExitedNonZero,
    AgentKind,
    AgentNotFound,
    AgentOutcome,
    AgentTimedOut,
    InvokeOptions,
)
from ralph.agents.claude import ClaudeAgent
from ralph.agents.codex import CodexAgent
from ralph.agents.droid import DroidAgent
from ralph.agents.dry_run import DryRunAgent
from ralph.agents.resilient import RetryPolicy, invoke_with_retries
from ralph.config import RalphConfig
from ralph.state.backlog import Story

AGENT_TYPES: dict[AgentKind, type[AgentAdapter]] = {
    AgentKind.CODEX: CodexAgent,
    AgentKind.CLAUDE: ClaudeAgent,
    AgentKind.DROID: DroidAgent,
}


def build_agent(
    kind: AgentKind | str,
    config: RalphConfig | None = None,
    *,
    dry_run: bool = False,
    event_hook: AgentEventHook | None = None,
) -> AgentAdapter:
    agent_kind = AgentKind(kind)
    config = config or RalphConfig.default()
    binary = config.binary_for(agent_kind.value)
    if dry_run:
        return DryRunAgent(agent_kind, binary=binary, event_hook=event_hook)
    return AGENT_TYPES[agent_kind](
        binary,
        extra_args=config.agent.extra_args,
        event_hook=event_hook,
    )


def agent_available(kind: AgentKind | str, config: RalphConfig | None = None) -> bool:
    return build_agent(kind, config).available()


async def invoke(
    kind: AgentKind | str,
    story: Story,
    working_directory: Path,
    options: InvokeOptions,
    config: RalphConfig | None = None,
) -> AgentOutcome:
    agent = build_agent(kind, config, dry_run=options.dry_run)
    return await agent.invoke(story, working_directory, options)


__all__ = [
    "AGENT_TYPES",
    "AgentAdapter",
    "AgentError",
    "AgentEventHook",
    "AgentExitedNonZero",
    "AgentKind",
    "AgentNotFound",
    "AgentOutcome",
    "AgentTimedOut",
    "ClaudeAgent",
    "CodexAgent",
    "DroidAgent",
    "DryRunAgent",
    "InvokeOptions",
    "RetryPolicy",
    "agent_available",
    "build_agent",
    "invoke",
    "invoke_with_retries",
]
