from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
import logging
import time
from typing import Final

from agentrelay.config import AgentConfig
from agentrelay.environment import EnvironmentProvisioner
from agentrelay.observability import log_event
from agentrelay.run_tokens import RUN_TOKEN_ENV_VAR
from agentrelay.shell import CommandError, CommandTimeoutError, run


LOGGER = logging.getLogger("agentrelay.agent_runner")

# Each command receives the prompt as its final argument.
DEFAULT_AGENT_COMMANDS: Final[dict[str, tuple[str, ...]]] = {
    "claude_code": (
        "claude",
        "--print",
        "--output-format=text",
        "--dangerously-skip-permissions",
        "-p",
    ),
}

_SUMMARY_LIMIT = 2000


class UnsupportedAgentTypeError(RuntimeError):
    pass


class AgentTimeoutError(RuntimeError):
    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


@dataclass(frozen=True)
class AgentInvocation:
    run_id: int
    agent_type: str
    prompt: str
    checkout_path: Path
    run_token: str
    timeout_seconds: float


@dataclass(frozen=True)
class AgentOutcome:
    success: bool
    has_changes: bool
    summary: str = ""
    error: str | None = None
    iterations: int | None = None
    duration_seconds: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None


class AgentRunner(ABC):
    @abstractmethod
    def run(self, invocation: AgentInvocation) -> AgentOutcome:
        """Run the agent to completion inside the invocation's checkout."""


class CliAgentRunner(AgentRunner):
    """Runs a coding-agent CLI as a subprocess and commits whatever it left behind."""

    def __init__(self, config: AgentConfig, provisioner: EnvironmentProvisioner) -> None:
        self._config = config
        self._provisioner = provisioner

    def command_for(self, agent_type: str) -> tuple[str, ...]:
        configured = self._config.command_for(agent_type)
        if configured is not None:
            return configured
        default = DEFAULT_AGENT_COMMANDS.get(agent_type)
        if default is None:
            raise UnsupportedAgentTypeError(
                f"No command configured for agent type {agent_type!r}; "
                f"add one under [agent.commands]"
            )
        return default

    def run(self, invocation: AgentInvocation) -> AgentOutcome:
        argv = [*self.command_for(invocation.agent_type), *self._config.extra_args]
        argv.append(invocation.prompt)
        pre_agent_sha = self._provisioner.head_sha(invocation.checkout_path)

        log_event(
            LOGGER,
            "agent_invocation_started",
            run_id=invocation.run_id,
            agent_type=invocation.agent_type,
            prompt_chars=len(invocation.prompt),
            timeout_seconds=invocation.timeout_seconds,
        )
        started = time.monotonic()
        try:
            output = run(
                argv,
                cwd=invocation.checkout_path,
                timeout_seconds=invocation.timeout_seconds,
                env={RUN_TOKEN_ENV_VAR: invocation.run_token},
            )
        except CommandTimeoutError as exc:
            log_event(
                LOGGER,
                "agent_invocation_finished",
                run_id=invocation.run_id,
                success=False,
                timed_out=True,
            )
            raise AgentTimeoutError(
                f"Agent exceeded {invocation.timeout_seconds:g}s",
                timeout_seconds=invocation.timeout_seconds,
            ) from exc
        except CommandError as exc:
            duration = time.monotonic() - started
            log_event(
                LOGGER,
                "agent_invocation_finished",
                run_id=invocation.run_id,
                success=False,
                duration_seconds=round(duration, 3),
            )
            return AgentOutcome(
                success=False,
                has_changes=False,
                error=_first_line(str(exc)),
                iterations=1,
                duration_seconds=duration,
            )
        duration = time.monotonic() - started

        self._provisioner.commit_pending(
            invocation.checkout_path,
            f"Apply {invocation.agent_type} changes for run {invocation.run_id}",
        )
        has_changes = self._provisioner.head_sha(invocation.checkout_path) != pre_agent_sha
        log_event(
            LOGGER,
            "agent_invocation_finished",
            run_id=invocation.run_id,
            success=True,
            has_changes=has_changes,
            duration_seconds=round(duration, 3),
        )
        return AgentOutcome(
            success=True,
            has_changes=has_changes,
            summary=output.strip()[-_SUMMARY_LIMIT:],
            iterations=1,
            duration_seconds=duration,
        )


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return text.strip()
