from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
import logging
import os
import subprocess


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


LOGGER = logging.getLogger("agentrelay.shell")


def _preview(text: str | None, *, limit: int = 200) -> str:
    compact = (text or "").replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    merged_env: dict[str, str] | None = None
    if env is not None:
        merged_env = dict(os.environ)
        merged_env.update(env)
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
            env=merged_env,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout if isinstance(exc.stdout, str) else None
        LOGGER.error(
            "event=command_failed command=%s exit_code=timeout timeout_seconds=%s stdout=%s",
            " ".join(argv),
            timeout_seconds,
            _preview(stdout),
        )
        raise CommandTimeoutError(
            f"Command timed out after {timeout_seconds}s\ncmd: {' '.join(argv)}",
            timeout_seconds=float(timeout_seconds or 0),
        ) from exc
    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}"
        )
    return proc.stdout
