from __future__ import annotations

from pathlib import Path

import pytest

from agentrelay.config import (
    AgentConfig,
    ConfigError,
    ProjectConfig,
    RuntimeConfig,
    load_config,
    project_config_from_dict,
    project_config_to_dict,
)


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


_MINIMAL = """
[runtime]
base_dir = "/tmp/agentrelay"

[project.site]
owner = "Acme"
name = "site"
"""


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path / "agentrelay.toml", _MINIMAL))

    assert cfg.runtime == RuntimeConfig(base_dir=Path("/tmp/agentrelay"))
    assert cfg.runtime.state_db_path == Path("/tmp/agentrelay/state.db")
    assert cfg.runtime.journal_db_path == Path("/tmp/agentrelay/journal.db")
    assert cfg.agent == AgentConfig()

    (project,) = cfg.projects
    assert project.project_id == "site"
    assert project.full_name == "Acme/site"
    assert project.default_branch == "main"
    assert project.poll_interval_seconds == 60
    assert project.watched_labels == ("agent:build", "agent:plan", "agent-generated")
    assert project.allowed_users == frozenset({"acme"})
    assert project.auto_scan_prs is True
    assert project.max_pr_followup_runs == 3
    assert project.pr_action_labels == ()
    assert project.auto_fix_merge_conflicts is False
    assert project.active is True
    assert project.effective_remote_url == "git@github.com:Acme/site.git"


def test_load_config_full_tables(tmp_path: Path) -> None:
    cfg = load_config(
        _write(
            tmp_path / "agentrelay.toml",
            """
[runtime]
base_dir = "~/agentrelay"
worker_count = 2
agent_timeout_seconds = 900
step_timeout_seconds = 180
retry_initial_interval_seconds = 2
retry_max_interval_seconds = 30.5
retry_max_attempts = 5
history_step_threshold = 50
stale_worktree_hours = 6

[project.api]
owner = "acme"
name = "api"
default_branch = "trunk"
poll_interval_seconds = 120
build_label = "bot:go"
plan_label = "bot:plan"
generated_label = "bot-made"
allowed_users = [" Alice ", "BOB", "alice"]
auto_scan_prs = false
max_pr_followup_runs = 0
pr_action_labels = ["bot:fix"]
auto_fix_merge_conflicts = true
active = false
remote_url = "https://example.test/acme/api.git"

[project.web]
owner = "acme"
name = "web"

[agent]
default_type = "aider"
extra_args = ["--yes"]

[agent.commands]
aider = ["aider", "--message-file", "-"]
""",
        )
    )

    assert cfg.runtime.base_dir == Path("~/agentrelay").expanduser()
    assert cfg.runtime.worker_count == 2
    assert cfg.runtime.step_timeout_seconds == 180
    assert cfg.runtime.retry_initial_interval_seconds == 2.0
    assert cfg.runtime.retry_max_interval_seconds == 30.5
    assert cfg.runtime.history_step_threshold == 50

    api = cfg.project("api")
    assert api.default_branch == "trunk"
    assert api.watched_labels == ("bot:go", "bot:plan", "bot-made")
    assert api.allowed_users == frozenset({"alice", "bob"})
    assert api.allows("ALICE")
    assert not api.allows("carol")
    assert not api.allows("  ")
    assert api.auto_scan_prs is False
    assert api.max_pr_followup_runs == 0
    assert api.pr_action_labels == ("bot:fix",)
    assert api.auto_fix_merge_conflicts is True
    assert api.active is False
    assert api.effective_remote_url == "https://example.test/acme/api.git"
    assert api.label_mappings.build_label == "bot:go"
    assert api.label_mappings.plan_label == "bot:plan"

    assert [project.project_id for project in cfg.projects] == ["api", "web"]
    assert cfg.agent.default_type == "aider"
    assert cfg.agent.extra_args == ("--yes",)
    assert cfg.agent.command_for("aider") == ("aider", "--message-file", "-")
    assert cfg.agent.command_for("codex") is None


def test_app_config_project_lookup_rejects_unknown_id(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path / "agentrelay.toml", _MINIMAL))
    with pytest.raises(ConfigError, match="Unknown project id 'nope'; expected one of: site"):
        cfg.project("nope")


def test_agent_config_resolve_type_falls_back_to_default() -> None:
    agent = AgentConfig(default_type="codex")
    assert agent.resolve_type(None) == "codex"
    assert agent.resolve_type("gemini") == "gemini"
    assert agent.resolve_type("not-an-agent") == "codex"


def test_watched_labels_deduplicates_shared_labels() -> None:
    project = ProjectConfig(
        project_id="p",
        owner="o",
        name="n",
        build_label="agent",
        plan_label="agent",
        generated_label="agent",
    )
    assert project.watched_labels == ("agent",)


def test_project_config_dict_round_trip_preserves_optional_fields() -> None:
    project = ProjectConfig(
        project_id="p",
        owner="o",
        name="n",
        allowed_users=frozenset({"o", "x"}),
        pr_action_labels=("fix",),
        local_clone_source="/tmp/mirror.git",
    )

    data = project_config_to_dict(project)
    assert data["allowed_users"] == ["o", "x"]
    assert "remote_url" not in data
    assert project_config_from_dict("p", data) == project


@pytest.mark.parametrize(
    ("runtime_extra", "message"),
    [
        ("worker_count = 0", "worker_count must be >= 1"),
        ("agent_timeout_seconds = 59", "agent_timeout_seconds must be >= 60"),
        ("step_timeout_seconds = 181", "step_timeout_seconds must be between 1 and 180"),
        ("step_timeout_seconds = 0", "step_timeout_seconds must be between 1 and 180"),
        ("provision_timeout_seconds = 0", "provision_timeout_seconds must be >= 1"),
        ("retry_initial_interval_seconds = 0", "retry_initial_interval_seconds must be > 0"),
        (
            "retry_initial_interval_seconds = 10\nretry_max_interval_seconds = 5",
            "retry_max_interval_seconds must be >=",
        ),
        ("retry_max_attempts = 0", "retry_max_attempts must be >= 1"),
        ("poll_iteration_cap = 0", "poll_iteration_cap must be >= 1"),
        ("history_step_threshold = 9", "history_step_threshold must be >= 10"),
        ("orphan_sweep_interval_seconds = 0", "orphan_sweep_interval_seconds must be >= 1"),
        ("stale_worktree_hours = 0", "stale_worktree_hours must be >= 1"),
        ("worker_count = true", "worker_count must be an integer"),
        (
            "retry_initial_interval_seconds = \"1\"",
            "retry_initial_interval_seconds must be a number",
        ),
    ],
)
def test_load_config_rejects_invalid_runtime(
    tmp_path: Path, runtime_extra: str, message: str
) -> None:
    content = f"""
[runtime]
base_dir = "/tmp/agentrelay"
{runtime_extra}

[project.site]
owner = "acme"
"""
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "agentrelay.toml", content))


@pytest.mark.parametrize(
    ("project_extra", "message"),
    [
        ("poll_interval_seconds = 59", "poll_interval_seconds must be >= 60"),
        ("max_pr_followup_runs = -1", "max_pr_followup_runs must be >= 0"),
        ("allowed_users = []", "allowed_users must be a non-empty list of strings"),
        ("allowed_users = [\"  \"]", "allowed_users must be a non-empty list of strings"),
        ("allowed_users = [1]", "allowed_users must be a non-empty list of strings"),
        ("auto_scan_prs = \"yes\"", "auto_scan_prs must be a boolean"),
        ("pr_action_labels = \"fix\"", "pr_action_labels must be a list of strings"),
        ("remote_url = \"\"", "remote_url must be a non-empty string if provided"),
    ],
)
def test_load_config_rejects_invalid_project(
    tmp_path: Path, project_extra: str, message: str
) -> None:
    content = f"""
[runtime]
base_dir = "/tmp/agentrelay"

[project.site]
owner = "acme"
{project_extra}
"""
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "agentrelay.toml", content))


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[project.site]\nowner = \"acme\"\n", r"\[runtime\] is required"),
        ("[runtime]\nbase_dir = \"/tmp/x\"\n", r"\[project\] is required"),
        ("[runtime]\nbase_dir = \"/tmp/x\"\n[project]\n", "at least one"),
        ("[runtime]\nbase_dir = \"/tmp/x\"\n[project]\nsite = 1\n", r"\[project.site\] must be"),
        ("[runtime]\n[project.site]\nowner = \"acme\"\n", "base_dir is required"),
        ("[runtime]\nbase_dir = \"/tmp/x\"\n[project.site]\nname = \"x\"\n", "owner is required"),
    ],
)
def test_load_config_rejects_missing_tables(
    tmp_path: Path, content: str, message: str
) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "agentrelay.toml", content))


def test_load_config_rejects_duplicate_repositories(tmp_path: Path) -> None:
    content = """
[runtime]
base_dir = "/tmp/agentrelay"

[project.one]
owner = "acme"
name = "site"

[project.two]
owner = "acme"
name = "site"
"""
    with pytest.raises(ConfigError, match="Duplicate repository 'acme/site'"):
        load_config(_write(tmp_path / "agentrelay.toml", content))


@pytest.mark.parametrize(
    ("agent_section", "message"),
    [
        ("[agent]\ndefault_type = \"vim\"\n", "agent.default_type must be one of"),
        ("[agent]\nextra_args = \"--yes\"\n", "extra_args must be a list of strings"),
        ("[agent.commands]\nvim = [\"vim\"]\n", "Unknown agent type 'vim'"),
        ("[agent.commands]\ncodex = []\n", "agent.commands.codex must be a non-empty list"),
        ("agent = 3\n", r"\[agent\] must be a TOML table"),
    ],
)
def test_load_config_rejects_invalid_agent(
    tmp_path: Path, agent_section: str, message: str
) -> None:
    if agent_section.startswith("["):
        content = f"{_MINIMAL}\n{agent_section}"
    else:
        content = f"{agent_section}{_MINIMAL}"
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "agentrelay.toml", content))
