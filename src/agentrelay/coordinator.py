"""The ``agent_execution`` workflow: one agent run from provisioning to pull request.

Every side effect goes through a journaled step, so a restarted service resumes the run at the
first step that had not finished. Cleanup runs exactly once per execution no matter how the run
ends, including when it was cancelled mid-flight.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
from typing import Final

from agentrelay.config import RuntimeConfig
from agentrelay.durable import (
    NO_RETRY,
    EngineUnavailableError,
    RetryPolicy,
    StepFailedError,
    StepOptions,
    WorkflowCancelledError,
    WorkflowContext,
)


LOGGER = logging.getLogger("agentrelay.coordinator")

AGENT_EXECUTION_WORKFLOW: Final[str] = "agent_execution"

# Extra time the step timeout allows beyond the agent's own subprocess timeout.
AGENT_STEP_GRACE_SECONDS: Final[int] = 60


class AgentRunFailedError(RuntimeError):
    pass


class RunCoordinator:
    def __init__(self, runtime: RuntimeConfig) -> None:
        retry = RetryPolicy(
            initial_interval_seconds=runtime.retry_initial_interval_seconds,
            max_interval_seconds=runtime.retry_max_interval_seconds,
            max_attempts=runtime.retry_max_attempts,
        )
        self.default_options = StepOptions(
            timeout_seconds=runtime.step_timeout_seconds, retry_policy=retry
        )
        self.provision_options = StepOptions(
            timeout_seconds=runtime.provision_timeout_seconds, retry_policy=retry
        )
        # Agent invocations run at most once per execution.
        self.agent_options = StepOptions(
            timeout_seconds=runtime.agent_timeout_seconds + AGENT_STEP_GRACE_SECONDS,
            retry_policy=NO_RETRY,
        )

    def __call__(self, ctx: WorkflowContext, input: dict[str, object]) -> dict[str, object]:
        return self.run(ctx, input)

    def run(self, ctx: WorkflowContext, input: dict[str, object]) -> dict[str, object]:
        created = ctx.execute_step("create_run", input, options=self.default_options)
        run_id = created["run_id"]
        payload: dict[str, object] = {"run_id": run_id}
        try:
            outcome = self._execute(ctx, input, payload)
        except EngineUnavailableError:
            raise
        except WorkflowCancelledError:
            self._mark_aborted(ctx, "mark_run_cancelled", payload)
            raise
        except Exception as exc:
            self._mark_aborted(
                ctx, "mark_run_failed", {**payload, "error": _describe_failure(exc)}
            )
            raise
        finally:
            with ctx.non_cancellable():
                self._cleanup(ctx, "cleanup_environment", payload)
                self._cleanup(ctx, "cleanup_worktree", payload)
        return {"run_id": run_id, **outcome}

    def _execute(
        self,
        ctx: WorkflowContext,
        input: Mapping[str, object],
        payload: dict[str, object],
    ) -> dict[str, object]:
        is_followup = input.get("source_pr_number") is not None
        ctx.execute_step("provision_environment", payload, options=self.provision_options)
        branch = ctx.execute_step("clone_and_branch", payload, options=self.default_options)

        if is_followup:
            rebase = ctx.execute_step(
                "rebase_branch",
                {**payload, "base_ref": branch["base_ref"]},
                options=self.default_options,
            )
            ctx.execute_step(
                "prepare_followup_prompt",
                {**payload, "rebase_succeeded": rebase["rebase_succeeded"]},
                options=self.default_options,
            )

        agent = ctx.execute_step("run_agent", payload, options=self.agent_options)
        if not agent.get("success"):
            raise AgentRunFailedError(str(agent.get("error") or "Agent reported failure"))
        summary = agent.get("summary") or ""

        if input.get("mode") == "plan":
            ctx.execute_step(
                "post_plan", {**payload, "summary": summary}, options=self.default_options
            )
            return {"outcome": "plan_posted"}

        if not agent.get("has_changes"):
            ctx.execute_step(
                "mark_run_complete",
                {**payload, "reason": "no_changes"},
                options=self.default_options,
            )
            return {"outcome": "no_changes"}

        ctx.execute_step("push_branch", payload, options=self.default_options)
        if is_followup:
            updated = ctx.execute_step(
                "complete_existing_pr_run", payload, options=self.default_options
            )
            ctx.execute_step("resolve_review_threads", payload, options=self.default_options)
            return {"outcome": "pr_updated", "pr_number": updated["pr_number"]}

        pr = ctx.execute_step(
            "create_pull_request", {**payload, "summary": summary}, options=self.default_options
        )
        ctx.execute_step(
            "update_work_item",
            {**payload, "pr_number": pr["pr_number"], "pr_url": pr["pr_url"]},
            options=self.default_options,
        )
        return {"outcome": "pr_created", "pr_number": pr["pr_number"]}

    def _mark_aborted(
        self, ctx: WorkflowContext, step_name: str, payload: dict[str, object]
    ) -> None:
        # The failure that aborted the run stays the one reported to the caller.
        try:
            with ctx.non_cancellable():
                ctx.execute_step(step_name, payload, options=self.default_options)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "event=run_marking_failed workflow_id=%s step=%s error_type=%s error=%s",
                ctx.workflow_id,
                step_name,
                type(exc).__name__,
                exc,
            )

    def _cleanup(self, ctx: WorkflowContext, step_name: str, payload: dict[str, object]) -> None:
        try:
            ctx.execute_step(step_name, payload, options=self.default_options)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "event=cleanup_failed workflow_id=%s step=%s error_type=%s error=%s",
                ctx.workflow_id,
                step_name,
                type(exc).__name__,
                exc,
            )


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, StepFailedError):
        return f"{exc.step_name}: {exc.cause_message or exc.cause_type}"
    return str(exc) or type(exc).__name__
