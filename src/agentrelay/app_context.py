from __future__ import annotations

from dataclasses import dataclass

from agentrelay.agent_runner import AgentRunner, CliAgentRunner
from agentrelay.config import AppConfig, ProjectConfig
from agentrelay.coordinator import AGENT_EXECUTION_WORKFLOW, RunCoordinator
from agentrelay.durable import WorkflowEngine, WorkflowJournal
from agentrelay.environment import EnvironmentProvisioner, GitWorktreeProvisioner
from agentrelay.github_gateway import GitHubGateway
from agentrelay.manager import ProjectWorkflowManager
from agentrelay.poll_loop import REPOSITORY_POLL_WORKFLOW, RepositoryPoller
from agentrelay.state import StateStore
from agentrelay.steps import ExecutionSteps, GitHubFactory
from agentrelay.worktree_sweep import WorktreeSweeper


@dataclass(frozen=True)
class AppContext:
    """Everything a process needs, built once at startup and passed down explicitly."""

    config: AppConfig
    store: StateStore
    engine: WorkflowEngine
    manager: ProjectWorkflowManager
    sweeper: WorktreeSweeper

    def close(self, *, wait: bool = True) -> None:
        self.engine.shutdown(wait=wait)


def default_github_factory(project: ProjectConfig) -> GitHubGateway:
    return GitHubGateway(project.owner, project.name)


def build_app_context(
    config: AppConfig,
    *,
    github_factory: GitHubFactory | None = None,
    provisioner: EnvironmentProvisioner | None = None,
    agent_runner: AgentRunner | None = None,
    execute_locally: bool = True,
) -> AppContext:
    runtime = config.runtime
    runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(runtime.state_db_path)
    journal = WorkflowJournal(runtime.journal_db_path)
    provisioner = provisioner or GitWorktreeProvisioner(runtime)
    agent_runner = agent_runner or CliAgentRunner(config.agent, provisioner)

    engine = WorkflowEngine(
        journal,
        max_concurrent_workflows=runtime.worker_count + len(config.projects),
        history_step_threshold=runtime.history_step_threshold,
        execute_locally=execute_locally,
    )
    steps = ExecutionSteps(
        store=store,
        config=config,
        github_factory=github_factory or default_github_factory,
        provisioner=provisioner,
        agent_runner=agent_runner,
    )
    engine.register_steps(steps.registry())
    engine.register_workflow(AGENT_EXECUTION_WORKFLOW, RunCoordinator(runtime))
    engine.register_workflow(REPOSITORY_POLL_WORKFLOW, RepositoryPoller(runtime))

    return AppContext(
        config=config,
        store=store,
        engine=engine,
        manager=ProjectWorkflowManager(engine=engine, store=store, config=config),
        sweeper=WorktreeSweeper(
            store=store, journal=journal, provisioner=provisioner, runtime=runtime
        ),
    )
