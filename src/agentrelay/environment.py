from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
import logging
import re
import shutil

from agentrelay.config import ProjectConfig, RuntimeConfig
from agentrelay.observability import log_event
from agentrelay.process_lock import repository_lock
from agentrelay.shell import CommandError, run


LOGGER = logging.getLogger("agentrelay.environment")

_MIRROR_LOCK_WAIT_SECONDS = 120.0
_SLUG_MAX_LENGTH = 40


@dataclass(frozen=True)
class ProvisionedEnvironment:
    environment_ref: str
    checkout_path: Path


class EnvironmentProvisioner(ABC):
    """Isolated working copy for one run."""

    @abstractmethod
    def provision(self, project: ProjectConfig, run_id: int) -> ProvisionedEnvironment:
        """Create (or reuse) the run's environment; safe to call more than once."""

    @abstractmethod
    def clone_and_branch(
        self,
        project: ProjectConfig,
        checkout_path: Path,
        *,
        branch: str,
        existing_branch: bool = False,
    ) -> str:
        """Check out ``branch`` and return the commit it starts from."""

    @abstractmethod
    def rebase_onto(self, checkout_path: Path, base_ref: str) -> bool:
        """Rebase the current branch; False means conflicts and the rebase was aborted."""

    @abstractmethod
    def commit_pending(self, checkout_path: Path, message: str) -> bool:
        """Commit uncommitted changes; False when the tree is clean."""

    @abstractmethod
    def head_sha(self, checkout_path: Path) -> str:
        """Current HEAD commit."""

    @abstractmethod
    def push(self, checkout_path: Path, branch: str, *, force: bool = False) -> None:
        """Publish ``branch`` to the remote."""

    @abstractmethod
    def release(self, environment_ref: str) -> None:
        """Tear down the environment; idempotent."""

    @abstractmethod
    def remove_checkout(self, checkout_path: Path) -> bool:
        """Delete the working copy; returns True once the path no longer exists."""


class GitWorktreeProvisioner(EnvironmentProvisioner):
    """One fresh clone per run, borrowing objects from a shared per-repository mirror."""

    def __init__(self, runtime: RuntimeConfig) -> None:
        self.runtime = runtime

    def mirror_path(self, project: ProjectConfig) -> Path:
        return self.runtime.base_dir / "repos" / project.owner / f"{project.name}.git"

    def checkouts_root(self, project: ProjectConfig) -> Path:
        return self.runtime.base_dir / "checkouts" / project.owner / project.name

    def checkout_path_for(self, project: ProjectConfig, run_id: int) -> Path:
        return self.checkouts_root(project) / f"run-{run_id}"

    def provision(self, project: ProjectConfig, run_id: int) -> ProvisionedEnvironment:
        self.checkouts_root(project).mkdir(parents=True, exist_ok=True)
        with repository_lock(
            base_dir=self.runtime.base_dir,
            project_id=project.project_id,
            command="provision",
            wait_seconds=_MIRROR_LOCK_WAIT_SECONDS,
        ):
            self._ensure_mirror(project)
        checkout_path = self.checkout_path_for(project, run_id)
        log_event(
            LOGGER,
            "environment_provisioned",
            run_id=run_id,
            checkout_path=str(checkout_path),
        )
        return ProvisionedEnvironment(
            environment_ref=f"local:{checkout_path}",
            checkout_path=checkout_path,
        )

    def clone_and_branch(
        self,
        project: ProjectConfig,
        checkout_path: Path,
        *,
        branch: str,
        existing_branch: bool = False,
    ) -> str:
        remote_url = project.effective_remote_url
        if not checkout_path.exists():
            log_event(LOGGER, "git_checkout_cloned", checkout_path=str(checkout_path))
            run(
                [
                    "git",
                    "clone",
                    "--reference-if-able",
                    str(self.mirror_path(project)),
                    remote_url,
                    str(checkout_path),
                ]
            )
        else:
            run(["git", "-C", str(checkout_path), "remote", "set-url", "origin", remote_url])
        run(["git", "-C", str(checkout_path), "fetch", "origin", "--prune"])

        start_ref = f"origin/{branch}" if existing_branch else f"origin/{project.default_branch}"
        log_event(
            LOGGER,
            "git_branch_reset",
            checkout_path=str(checkout_path),
            branch=branch,
            start_ref=start_ref,
        )
        run(["git", "-C", str(checkout_path), "checkout", "-B", branch, start_ref])
        run(["git", "-C", str(checkout_path), "reset", "--hard", start_ref])
        run(["git", "-C", str(checkout_path), "clean", "-ffdx"])
        return self.head_sha(checkout_path)

    def rebase_onto(self, checkout_path: Path, base_ref: str) -> bool:
        run(["git", "-C", str(checkout_path), "fetch", "origin", "--prune"])
        try:
            run(["git", "-C", str(checkout_path), "rebase", f"origin/{base_ref}"])
        except CommandError:
            run(["git", "-C", str(checkout_path), "rebase", "--abort"], check=False)
            log_event(
                LOGGER,
                "git_rebase_conflict",
                checkout_path=str(checkout_path),
                base_ref=base_ref,
            )
            return False
        log_event(LOGGER, "git_rebased", checkout_path=str(checkout_path), base_ref=base_ref)
        return True

    def commit_pending(self, checkout_path: Path, message: str) -> bool:
        run(["git", "-C", str(checkout_path), "add", "-A"])
        diff = run(["git", "-C", str(checkout_path), "diff", "--cached", "--name-only"]).strip()
        if not diff:
            return False
        log_event(
            LOGGER,
            "git_commit",
            checkout_path=str(checkout_path),
            file_count=len(diff.splitlines()),
        )
        run(["git", "-C", str(checkout_path), "commit", "-m", message])
        return True

    def head_sha(self, checkout_path: Path) -> str:
        return run(["git", "-C", str(checkout_path), "rev-parse", "HEAD"]).strip()

    def push(self, checkout_path: Path, branch: str, *, force: bool = False) -> None:
        cmd = ["git", "-C", str(checkout_path), "push", "-u", "origin", branch]
        if force:
            cmd.insert(4, "--force-with-lease")
        log_event(LOGGER, "git_push", checkout_path=str(checkout_path), branch=branch, force=force)
        try:
            run(cmd)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                checkout_path=str(checkout_path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def release(self, environment_ref: str) -> None:
        if not environment_ref.startswith("local:"):
            raise ValueError(f"Unsupported environment reference: {environment_ref!r}")
        self.remove_checkout(Path(environment_ref.removeprefix("local:")))

    def remove_checkout(self, checkout_path: Path) -> bool:
        if checkout_path.exists():
            shutil.rmtree(checkout_path, ignore_errors=True)
        removed = not checkout_path.exists()
        log_event(
            LOGGER,
            "checkout_removed",
            checkout_path=str(checkout_path),
            removed=removed,
        )
        return removed

    def _ensure_mirror(self, project: ProjectConfig) -> None:
        mirror_path = self.mirror_path(project)
        mirror_path.parent.mkdir(parents=True, exist_ok=True)
        remote_url = project.effective_remote_url
        source = project.local_clone_source or remote_url
        if not mirror_path.exists():
            log_event(LOGGER, "git_mirror_cloned", mirror_path=str(mirror_path))
            run(["git", "clone", "--mirror", source, str(mirror_path)])

        log_event(LOGGER, "git_mirror_synced", mirror_path=str(mirror_path))
        run(["git", f"--git-dir={mirror_path}", "remote", "set-url", "origin", remote_url])
        run(["git", f"--git-dir={mirror_path}", "fetch", "origin", "--prune", "--tags"])


def branch_name_for(*, run_id: int, number: int | None, title: str | None) -> str:
    """Branch for a new-work run: ``agent/<number>-<slug>-r<run>`` or ``agent/prompt-r<run>``."""
    if number is None:
        return f"agent/prompt-r{run_id}"
    slug = re.sub(r"[^a-z0-9]+", "-", (title or "").lower()).strip("-")[:_SLUG_MAX_LENGTH]
    slug = slug.strip("-")
    if not slug:
        return f"agent/{number}-r{run_id}"
    return f"agent/{number}-{slug}-r{run_id}"
