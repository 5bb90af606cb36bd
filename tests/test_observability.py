from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from agentrelay import observability
from agentrelay.observability import configure_logging, log_event, logging_project_context


@pytest.fixture(autouse=True)
def restore_agentrelay_logger_state() -> None:
    logger = logging.getLogger("agentrelay")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("agentrelay")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("agentrelay")
    assert logger.propagate is False
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt
    assert "%(project_id)s" in handler.formatter._fmt

    configure_logging(verbose="high")
    assert len(logger.handlers) == 1


def test_logging_project_context_is_applied_to_verbose_output(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("agentrelay.tests.project")
    with logging_project_context("alpha"):
        logger.info("event=run_created run_id=1")
    logger.info("event=run_created run_id=2")

    lines = capsys.readouterr().err.splitlines()
    assert any("project=alpha" in line and "run_id=1" in line for line in lines)
    assert any("project=-" in line and "run_id=2" in line for line in lines)


def test_logging_project_context_is_isolated_per_thread() -> None:
    def resolve(project_id: str) -> str:
        with logging_project_context(project_id):
            record = logging.LogRecord(
                name="agentrelay.tests.threads",
                level=logging.INFO,
                pathname=__file__,
                lineno=1,
                msg="event=heartbeat",
                args=(),
                exc_info=None,
            )
            return observability._project_id_for_record(record)

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(resolve, "one")
        second = pool.submit(resolve, "two")

    assert first.result() == "one"
    assert second.result() == "two"


def test_configure_logging_low_mode_filters_to_lifecycle_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("agentrelay.tests.low")

    logger.info("event=github_read endpoint=issues")
    logger.info("event=run_created run_id=1")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.warning("event=step_failed step_name=push_branch")

    stderr = capsys.readouterr().err
    assert "event=github_read" not in stderr
    assert "event=run_created run_id=1" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=step_failed step_name=push_branch" in stderr


def test_configure_logging_writes_utc_daily_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logger = logging.getLogger("agentrelay.tests.file")
    logger.info("event=run_created run_id=2")

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"{date_key}.log"
    assert log_path.exists()
    assert "event=run_created run_id=2" in log_path.read_text(encoding="utf-8")


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_utc_daily_file_handler_handles_emit_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = observability._UtcDailyFileHandler(base_dir=Path("/tmp"))
    called: dict[str, object] = {}

    monkeypatch.setattr(
        handler,
        "_stream_for_current_date",
        lambda: (_ for _ in ()).throw(RuntimeError("boom")),
    )
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="agentrelay.tests.observability",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=run_created run_id=1",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    assert "record" in called


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("agentrelay.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        labels=("agent:build", "bug"),
        complex_value={"k": "v"},
        pair="k=v",
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert message.index("a=") < message.index("b=")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "complex_value=<dict>" in message
    assert "labels=agent:build,bug" in message
    assert 'pair="k=v"' in message
    assert "x" * 120 + "..." in message
    logger.handlers.clear()


def test_extract_event_name() -> None:
    assert observability._extract_event_name("event=run_created run_id=1") == "run_created"
    assert observability._extract_event_name("event= x") is None
    assert observability._extract_event_name("no event here") is None
