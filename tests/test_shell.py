from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from agentrelay.observability import configure_logging
from agentrelay.shell import CommandError, CommandTimeoutError, _preview, run


def test_run_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["echo"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["echo", "hello"], cwd=tmp_path, input_text="hi")

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    assert kwargs["env"] is None
    assert kwargs["timeout"] is None


def test_run_merges_extra_env_over_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["env"] = kwargs["env"]
        return subprocess.CompletedProcess(args=["x"], returncode=0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    monkeypatch.setenv("AGENTRELAY_TEST_BASE", "kept")

    run(["x"], env={"AGENTRELAY_RUN_TOKEN": "secret"})

    env = called["env"]
    assert isinstance(env, dict)
    assert env["AGENTRELAY_RUN_TOKEN"] == "secret"
    assert env["AGENTRELAY_TEST_BASE"] == "kept"


def test_run_failure_raises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed"):
        run(["bad"])
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr


def test_run_failure_without_check_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(
            args=["gh"], returncode=1, stdout="HTTP/2 404", stderr=""
        )

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert run(["gh"], check=False) == "HTTP/2 404"


def test_run_timeout_raises_command_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(cmd=["slow"], timeout=5, output="partial")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandTimeoutError, match="timed out after 5") as exc_info:
        run(["slow"], timeout_seconds=5)
    assert exc_info.value.timeout_seconds == 5.0
    assert isinstance(exc_info.value, CommandError)


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview(None) == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _preview("a\nb") == "a\\nb"
