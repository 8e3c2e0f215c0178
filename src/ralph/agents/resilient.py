from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from ralph.agents.base import (
    AgentAdapter,
    AgentEventHook,
    AgentExitedNonZero,
    AgentOutcome,
    InvokeOptions,
)
from ralph.state.backlog import Story


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 2.0


async def invoke_with_retries(
    adapter: AgentAdapter,
    story: Story,
    working_directory: Path,
    options: InvokeOptions,
    policy: RetryPolicy,
    event_hook: AgentEventHook | None = None,
) -> AgentOutcome:
    """Invoke an agent, re-running it on non-zero exits and timeouts.

    ``AgentNotFound`` and any other error propagate on the first attempt.
    """
    attempts = max(0, policy.max_retries) + 1
    last_error: AgentExitedNonZero | None = None
    for attempt in range(attempts):
        if attempt > 0:
            delay = policy.backoff_seconds * (2 ** (attempt - 1))
            if event_hook:
                event_hook(
                    {
                        "event": "agent_retry",
                        "agent": adapter.kind.value,
                        "story_id": story.id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
            await asyncio.sleep(delay)
        try:
            return await adapter.invoke(story, working_directory, options)
        except AgentExitedNonZero as exc:
            last_error = exc
    if last_error is None:
        raise AgentExitedNonZero("No agent attempt was made.", agent=adapter.kind.value)
    raise last_error
