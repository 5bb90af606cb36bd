from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "agentrelay"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] project=%(project_id)s %(message)s"
)
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "workflow_started",
        "workflow_finished",
        "child_workflow_dispatched",
        "run_created",
        "run_failed",
        "run_completed",
        "agent_invocation_started",
        "agent_invocation_finished",
        "github_pr_created",
        "followup_scan_completed",
        "manual_run_triggered",
        "git_push_failed",
        "cleanup_failed",
    }
)
_NO_PROJECT: Final[str] = "-"
_PROJECT_CONTEXT: ContextVar[str | None] = ContextVar("agentrelay_project_id", default=None)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)

    if state_dir is not None:
        file_handler = _UtcDailyFileHandler(base_dir=state_dir)
        _configure_handler(file_handler, mode)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


@contextmanager
def logging_project_context(project_id: str | None) -> Iterator[None]:
    token = _PROJECT_CONTEXT.set(project_id)
    try:
        yield
    finally:
        _PROJECT_CONTEXT.reset(token)


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    elif isinstance(value, tuple | list):
        normalized = ",".join(str(item) for item in value) or "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    handler.addFilter(_ProjectContextFilter())
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


def _project_id_for_record(record: logging.LogRecord) -> str:
    project_id = _PROJECT_CONTEXT.get()
    if project_id:
        return project_id
    return _NO_PROJECT


class _ProjectContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "project_id"):
            record.project_id = _project_id_for_record(record)
        return True


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS


class _UtcDailyFileHandler(logging.Handler):
    def __init__(self, *, base_dir: Path) -> None:
        super().__init__()
        self._logs_dir = base_dir / "logs"
        self._stream: TextIO | None = None
        self._active_date = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._stream_for_current_date()
            stream.write(f"{self.format(record)}\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._close_stream()
            super().close()
        finally:
            self.release()

    def _stream_for_current_date(self) -> TextIO:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is None or self._active_date != date_key:
            self._close_stream()
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            path = self._logs_dir / f"{date_key}.log"
            self._stream = path.open("a", encoding="utf-8")
            self._active_date = date_key
        return self._stream

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
