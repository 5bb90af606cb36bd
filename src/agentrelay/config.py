from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from agentrelay.models import AGENT_TYPES


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int = 4
    agent_timeout_seconds: int = 3600
    step_timeout_seconds: int = 120
    provision_timeout_seconds: int = 600
    retry_initial_interval_seconds: float = 1.0
    retry_max_interval_seconds: float = 60.0
    retry_max_attempts: int = 3
    poll_iteration_cap: int = 100
    history_step_threshold: int = 2000
    orphan_sweep_interval_seconds: int = 900
    stale_worktree_hours: int = 24

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"

    @property
    def journal_db_path(self) -> Path:
        return self.base_dir / "journal.db"


@dataclass(frozen=True)
class LabelMapping:
    build_label: str
    plan_label: str


@dataclass(frozen=True)
class ProjectConfig:
    project_id: str
    owner: str
    name: str
    default_branch: str = "main"
    poll_interval_seconds: int = 60
    build_label: str = "agent:build"
    plan_label: str = "agent:plan"
    generated_label: str = "agent-generated"
    allowed_users: frozenset[str] = frozenset()
    auto_scan_prs: bool = True
    max_pr_followup_runs: int = 3
    pr_action_labels: tuple[str, ...] = ()
    auto_fix_merge_conflicts: bool = False
    active: bool = True
    remote_url: str | None = None
    local_clone_source: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"git@github.com:{self.owner}/{self.name}.git"

    @property
    def label_mappings(self) -> LabelMapping:
        return LabelMapping(build_label=self.build_label, plan_label=self.plan_label)

    @property
    def watched_labels(self) -> tuple[str, ...]:
        out: list[str] = []
        for label in (self.build_label, self.plan_label, self.generated_label):
            if label not in out:
                out.append(label)
        return tuple(out)

    def allows(self, login: str) -> bool:
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in self.allowed_users


@dataclass(frozen=True)
class AgentConfig:
    default_type: str = "claude_code"
    extra_args: tuple[str, ...] = ()
    commands: tuple[tuple[str, tuple[str, ...]], ...] = ()

    def command_for(self, agent_type: str) -> tuple[str, ...] | None:
        for configured_type, argv in self.commands:
            if configured_type == agent_type:
                return argv
        return None

    def resolve_type(self, agent_type: str | None) -> str:
        if agent_type is not None and agent_type in AGENT_TYPES:
            return agent_type
        return self.default_type


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    projects: tuple[ProjectConfig, ...]
    agent: AgentConfig = AgentConfig()

    def project(self, project_id: str) -> ProjectConfig:
        for project in self.projects:
            if project.project_id == project_id:
                return project
        available = ", ".join(sorted(project.project_id for project in self.projects))
        raise ConfigError(f"Unknown project id {project_id!r}; expected one of: {available}")


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    project_data = _require_table(data, "project")
    agent_data = _optional_table(data, "agent") or {}

    runtime = _parse_runtime_config(runtime_data)
    projects = _load_project_configs(project_data)
    agent = _parse_agent_config(agent_data)
    return AppConfig(runtime=runtime, projects=projects, agent=agent)


def project_config_from_dict(project_id: str, data: dict[str, object]) -> ProjectConfig:
    """Parse one project table, either from TOML or from a stored settings snapshot."""
    owner = _require_str(data, "owner")
    poll_interval_seconds = _int_with_default(data, "poll_interval_seconds", 60)
    if poll_interval_seconds < 60:
        raise ConfigError(f"project.{project_id}.poll_interval_seconds must be >= 60")
    max_pr_followup_runs = _int_with_default(data, "max_pr_followup_runs", 3)
    if max_pr_followup_runs < 0:
        raise ConfigError(f"project.{project_id}.max_pr_followup_runs must be >= 0")
    return ProjectConfig(
        project_id=project_id,
        owner=owner,
        name=_str_with_default(data, "name", project_id),
        default_branch=_str_with_default(data, "default_branch", "main"),
        poll_interval_seconds=poll_interval_seconds,
        build_label=_str_with_default(data, "build_label", "agent:build"),
        plan_label=_str_with_default(data, "plan_label", "agent:plan"),
        generated_label=_str_with_default(data, "generated_label", "agent-generated"),
        allowed_users=_allowed_users_with_default(data, "allowed_users", owner=owner),
        auto_scan_prs=_bool_with_default(data, "auto_scan_prs", True),
        max_pr_followup_runs=max_pr_followup_runs,
        pr_action_labels=_tuple_of_str_with_default(data, "pr_action_labels", ()),
        auto_fix_merge_conflicts=_bool_with_default(data, "auto_fix_merge_conflicts", False),
        active=_bool_with_default(data, "active", True),
        remote_url=_optional_str(data, "remote_url"),
        local_clone_source=_optional_str(data, "local_clone_source"),
    )


def project_config_to_dict(project: ProjectConfig) -> dict[str, object]:
    data: dict[str, object] = {
        "owner": project.owner,
        "name": project.name,
        "default_branch": project.default_branch,
        "poll_interval_seconds": project.poll_interval_seconds,
        "build_label": project.build_label,
        "plan_label": project.plan_label,
        "generated_label": project.generated_label,
        "auto_scan_prs": project.auto_scan_prs,
        "max_pr_followup_runs": project.max_pr_followup_runs,
        "pr_action_labels": list(project.pr_action_labels),
        "auto_fix_merge_conflicts": project.auto_fix_merge_conflicts,
        "active": project.active,
    }
    if project.allowed_users:
        data["allowed_users"] = sorted(project.allowed_users)
    if project.remote_url is not None:
        data["remote_url"] = project.remote_url
    if project.local_clone_source is not None:
        data["local_clone_source"] = project.local_clone_source
    return data


def _parse_runtime_config(runtime_data: dict[str, object]) -> RuntimeConfig:
    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        agent_timeout_seconds=_int_with_default(runtime_data, "agent_timeout_seconds", 3600),
        step_timeout_seconds=_int_with_default(runtime_data, "step_timeout_seconds", 120),
        provision_timeout_seconds=_int_with_default(
            runtime_data, "provision_timeout_seconds", 600
        ),
        retry_initial_interval_seconds=_float_with_default(
            runtime_data, "retry_initial_interval_seconds", 1.0
        ),
        retry_max_interval_seconds=_float_with_default(
            runtime_data, "retry_max_interval_seconds", 60.0
        ),
        retry_max_attempts=_int_with_default(runtime_data, "retry_max_attempts", 3),
        poll_iteration_cap=_int_with_default(runtime_data, "poll_iteration_cap", 100),
        history_step_threshold=_int_with_default(runtime_data, "history_step_threshold", 2000),
        orphan_sweep_interval_seconds=_int_with_default(
            runtime_data, "orphan_sweep_interval_seconds", 900
        ),
        stale_worktree_hours=_int_with_default(runtime_data, "stale_worktree_hours", 24),
    )

    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.agent_timeout_seconds < 60:
        raise ConfigError("runtime.agent_timeout_seconds must be >= 60")
    if runtime.step_timeout_seconds < 1 or runtime.step_timeout_seconds > 180:
        raise ConfigError("runtime.step_timeout_seconds must be between 1 and 180")
    if runtime.provision_timeout_seconds < 1:
        raise ConfigError("runtime.provision_timeout_seconds must be >= 1")
    if runtime.retry_initial_interval_seconds <= 0:
        raise ConfigError("runtime.retry_initial_interval_seconds must be > 0")
    if runtime.retry_max_interval_seconds < runtime.retry_initial_interval_seconds:
        raise ConfigError(
            "runtime.retry_max_interval_seconds must be >= runtime.retry_initial_interval_seconds"
        )
    if runtime.retry_max_attempts < 1:
        raise ConfigError("runtime.retry_max_attempts must be >= 1")
    if runtime.poll_iteration_cap < 1:
        raise ConfigError("runtime.poll_iteration_cap must be >= 1")
    if runtime.history_step_threshold < 10:
        raise ConfigError("runtime.history_step_threshold must be >= 10")
    if runtime.orphan_sweep_interval_seconds < 1:
        raise ConfigError("runtime.orphan_sweep_interval_seconds must be >= 1")
    if runtime.stale_worktree_hours < 1:
        raise ConfigError("runtime.stale_worktree_hours must be >= 1")
    return runtime


def _load_project_configs(project_data: dict[str, object]) -> tuple[ProjectConfig, ...]:
    if not project_data:
        raise ConfigError("[project] must define at least one [project.<id>] table")

    projects: list[ProjectConfig] = []
    for project_id, raw_value in sorted(project_data.items()):
        table = _require_project_table(raw_value, table_name=f"[project.{project_id}]")
        projects.append(project_config_from_dict(project_id, table))
    _ensure_unique_full_names(projects)
    return tuple(projects)


def _parse_agent_config(agent_data: dict[str, object]) -> AgentConfig:
    default_type = _str_with_default(agent_data, "default_type", "claude_code")
    if default_type not in AGENT_TYPES:
        raise ConfigError(f"agent.default_type must be one of: {', '.join(AGENT_TYPES)}")

    raw_commands = agent_data.get("commands", {})
    commands_table = _require_project_table(raw_commands, table_name="[agent.commands]")
    commands: list[tuple[str, tuple[str, ...]]] = []
    for agent_type in sorted(commands_table):
        if agent_type not in AGENT_TYPES:
            raise ConfigError(
                f"Unknown agent type {agent_type!r} in [agent.commands]; expected one of: "
                f"{', '.join(AGENT_TYPES)}"
            )
        argv = _tuple_of_str(commands_table, agent_type)
        if not argv:
            raise ConfigError(f"agent.commands.{agent_type} must be a non-empty list of strings")
        commands.append((agent_type, argv))

    return AgentConfig(
        default_type=default_type,
        extra_args=_tuple_of_str_with_default(agent_data, "extra_args", ()),
        commands=tuple(commands),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_project_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _allowed_users_with_default(
    data: dict[str, object], key: str, *, owner: str
) -> frozenset[str]:
    if key not in data:
        return frozenset({owner.strip().lower()})

    value = data.get(key)
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{key} must be a non-empty list of strings")
    out: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a non-empty list of strings")
        normalized = item.strip().lower()
        if not normalized:
            raise ConfigError(f"{key} must be a non-empty list of strings")
        out.add(normalized)
    return frozenset(out)


def _ensure_unique_full_names(projects: list[ProjectConfig]) -> None:
    seen: dict[str, str] = {}
    for project in projects:
        existing_id = seen.get(project.full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repository {project.full_name!r} across project ids "
                f"{existing_id!r} and {project.project_id!r}"
            )
        seen[project.full_name] = project.project_id
