from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Static

from agentrelay.observability_queries import (
    ActiveRunRow,
    MetricsStats,
    OverviewStats,
    RunHistoryRow,
    WorkflowExecutionRow,
    load_active_runs,
    load_metrics,
    load_overview,
    load_run_history,
    load_workflow_executions,
)


_WINDOW_OPTIONS: tuple[str, ...] = ("1h", "24h", "7d", "30d")
_ERROR_MAX_CHARS = 48


class _DetailModal(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("q", "close", "Close"),
    ]
    CSS = """
    #detail-dialog {
        width: 90%;
        height: 80%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    #detail-title {
        text-style: bold;
        margin-bottom: 1;
    }
    """

    def __init__(self, *, title: str, body: str) -> None:
        super().__init__()
        self._title = title
        self._body = body

    def compose(self) -> ComposeResult:
        with Vertical(id="detail-dialog"):
            yield Static(self._title, id="detail-title")
            with VerticalScroll():
                yield Static(self._body, id="detail-body")
            yield Static("Esc or q to close")

    def action_close(self) -> None:
        self.dismiss(None)


class ObservabilityApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_project_filter", "Project Filter"),
        Binding("w", "cycle_window", "Window"),
        Binding("tab", "cycle_focus", "Focus"),
        Binding("enter", "show_detail", "Details"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        state_db_path: Path,
        journal_db_path: Path,
        refresh_seconds: int = 2,
        default_window: str = "24h",
        row_limit: int = 200,
    ) -> None:
        super().__init__()
        self._state_db_path = state_db_path
        self._journal_db_path = journal_db_path
        self._refresh_seconds = refresh_seconds
        self._window = _normalize_window(default_window)
        self._row_limit = row_limit
        self._project_filter: str | None = None
        self._available_projects: tuple[str, ...] = ()
        self._active_rows: tuple[ActiveRunRow, ...] = ()
        self._history_rows: tuple[RunHistoryRow, ...] = ()
        self._workflow_rows: tuple[WorkflowExecutionRow, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Active Runs", classes="panel-title")
            yield DataTable(id="active-table", cursor_type="row")
            yield Static("Recent Runs", classes="panel-title")
            yield DataTable(id="history-table", cursor_type="row")
            yield Static("Workflows", classes="panel-title")
            yield DataTable(id="workflow-table", cursor_type="row")
            yield Static("Metrics", classes="panel-title")
            yield DataTable(id="metrics-table")
        yield Footer()

    def on_mount(self) -> None:
        self._init_tables()
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_window(self) -> None:
        self._window = _next_window(self._window)
        self.refresh_data()

    def action_cycle_project_filter(self) -> None:
        self._project_filter = _next_project_filter(
            self._project_filter, self._available_projects
        )
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        self.action_show_detail()

    def action_show_detail(self) -> None:
        focused = self.focused
        if not isinstance(focused, DataTable) or focused.row_count < 1:
            return
        row_index = focused.cursor_row
        if focused.id == "active-table" and row_index < len(self._active_rows):
            active = self._active_rows[row_index]
            self.push_screen(
                _DetailModal(title=f"Run {active.run_id}", body=_active_run_detail(active))
            )
        elif focused.id == "history-table" and row_index < len(self._history_rows):
            finished = self._history_rows[row_index]
            self.push_screen(
                _DetailModal(title=f"Run {finished.run_id}", body=_history_detail(finished))
            )
        elif focused.id == "workflow-table" and row_index < len(self._workflow_rows):
            workflow = self._workflow_rows[row_index]
            self.push_screen(
                _DetailModal(title=workflow.workflow_id, body=_workflow_detail(workflow))
            )

    def refresh_data(self) -> None:
        overview = load_overview(self._state_db_path, self._project_filter, self._window)
        self._active_rows = load_active_runs(
            self._state_db_path, self._project_filter, limit=self._row_limit
        )
        self._history_rows = load_run_history(
            self._state_db_path, self._project_filter, limit=self._row_limit
        )
        self._workflow_rows = load_workflow_executions(
            self._journal_db_path, status="running", limit=self._row_limit
        )
        metrics = load_metrics(self._state_db_path, self._project_filter, self._window)
        self._available_projects = tuple(
            sorted({row.project_id for row in metrics.per_project})
        )
        self.query_one("#summary", Static).update(
            _summary_text(
                overview=overview, project_filter=self._project_filter, window=self._window
            )
        )
        self._refresh_active_table()
        self._refresh_history_table()
        self._refresh_workflow_table()
        self._refresh_metrics_table(metrics)

    def _init_tables(self) -> None:
        self.query_one("#active-table", DataTable).add_columns(
            "Project", "Run", "Status", "Agent", "Issue", "PR", "Branch", "Elapsed"
        )
        self.query_one("#history-table", DataTable).add_columns(
            "Finished", "Project", "Run", "Status", "Reason", "PR", "Error"
        )
        self.query_one("#workflow-table", DataTable).add_columns(
            "Workflow", "Type", "Status", "Steps", "Continued", "Cancel", "Updated"
        )
        self.query_one("#metrics-table", DataTable).add_columns(
            "Project", "Terminal", "Failed", "Failure Rate", "Mean", "StdDev"
        )

    def _refresh_active_table(self) -> None:
        table = self.query_one("#active-table", DataTable)
        table.clear(columns=False)
        for row in self._active_rows:
            table.add_row(
                row.project_id,
                str(row.run_id),
                row.status,
                row.agent_type if row.mode == "build" else f"{row.agent_type} ({row.mode})",
                str(row.issue_number) if row.issue_number is not None else "-",
                str(row.source_pr_number) if row.source_pr_number is not None else "-",
                row.branch or "-",
                _render_seconds(row.elapsed_seconds),
            )

    def _refresh_history_table(self) -> None:
        table = self.query_one("#history-table", DataTable)
        table.clear(columns=False)
        for row in self._history_rows:
            table.add_row(
                row.completed_at or row.created_at,
                row.project_id,
                str(row.run_id),
                row.status,
                row.completion_reason or "-",
                str(row.pr_number) if row.pr_number is not None else "-",
                _snippet(row.error, max_chars=_ERROR_MAX_CHARS),
            )

    def _refresh_workflow_table(self) -> None:
        table = self.query_one("#workflow-table", DataTable)
        table.clear(columns=False)
        for row in self._workflow_rows:
            table.add_row(
                row.workflow_id,
                row.workflow_type,
                row.status,
                str(row.step_count),
                str(row.continuation_count),
                "yes" if row.cancel_requested else "-",
                row.updated_at,
            )

    def _refresh_metrics_table(self, metrics: MetricsStats) -> None:
        table = self.query_one("#metrics-table", DataTable)
        table.clear(columns=False)
        for metric in (metrics.overall, *metrics.per_project):
            table.add_row(
                "all" if metric is metrics.overall else metric.project_id,
                str(metric.terminal_count),
                str(metric.failed_count),
                _render_ratio(metric.failure_rate),
                _render_seconds(metric.mean_runtime_seconds),
                _render_seconds(metric.stddev_runtime_seconds),
            )


def run_observability_tui(
    *,
    state_db_path: Path,
    journal_db_path: Path,
    refresh_seconds: int = 2,
    default_window: str = "24h",
    row_limit: int = 200,
) -> None:
    app = ObservabilityApp(
        state_db_path=state_db_path,
        journal_db_path=journal_db_path,
        refresh_seconds=refresh_seconds,
        default_window=default_window,
        row_limit=row_limit,
    )
    app.run()


def _summary_text(*, overview: OverviewStats, project_filter: str | None, window: str) -> str:
    return (
        " | ".join(
            [
                f"project={project_filter or 'all'}",
                f"window={window}",
                f"active={overview.active_runs}",
                f"followups={overview.followup_runs}",
                f"completed={overview.completed}",
                f"failures={overview.failures}",
                f"prs={overview.pull_requests_opened}",
                f"mean={_render_seconds(overview.mean_runtime_seconds)}",
                f"stddev={_render_seconds(overview.stddev_runtime_seconds)}",
            ]
        )
        + "\nKeys: r refresh | f project filter | w window | tab focus | enter details | q quit"
    )


def _active_run_detail(row: ActiveRunRow) -> str:
    return "\n".join(
        [
            f"Project: {row.project_id}",
            f"Workflow: {row.workflow_id}",
            f"Status: {row.status}",
            f"Agent: {row.agent_type} ({row.mode})",
            f"Issue: {row.issue_number if row.issue_number is not None else '-'}",
            f"Follow-up PR: {row.source_pr_number if row.source_pr_number is not None else '-'}",
            f"Branch: {row.branch or '-'}",
            f"Started: {row.started_at}",
            f"Elapsed: {_render_seconds(row.elapsed_seconds)}",
        ]
    )


def _history_detail(row: RunHistoryRow) -> str:
    lines = [
        f"Project: {row.project_id}",
        f"Workflow: {row.workflow_id}",
        f"Status: {row.status}",
        f"Reason: {row.completion_reason or '-'}",
        f"Pull request: {row.pr_url or '-'}",
        f"Created: {row.created_at}",
        f"Finished: {row.completed_at or '-'}",
    ]
    if row.duration_seconds is not None:
        lines.append(f"Agent duration: {_render_seconds(row.duration_seconds)}")
    if row.error:
        lines.extend(["", "Error:", row.error])
    return "\n".join(lines)


def _workflow_detail(row: WorkflowExecutionRow) -> str:
    lines = [
        f"Type: {row.workflow_type}",
        f"Status: {row.status}",
        f"Steps recorded: {row.step_count}",
        f"Continued as new: {row.continuation_count}",
        f"Cancel requested: {'yes' if row.cancel_requested else 'no'}",
        f"Updated: {row.updated_at}",
    ]
    if row.error:
        lines.extend(["", "Error:", row.error])
    return "\n".join(lines)


def _normalize_window(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in _WINDOW_OPTIONS:
        return "24h"
    return normalized


def _next_window(current: str) -> str:
    normalized = _normalize_window(current)
    idx = _WINDOW_OPTIONS.index(normalized)
    return _WINDOW_OPTIONS[(idx + 1) % len(_WINDOW_OPTIONS)]


def _next_project_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    options: tuple[str | None, ...] = (None, *available)
    if current not in options:
        return options[0]
    idx = options.index(current)
    return options[(idx + 1) % len(options)]


def _render_seconds(value: float) -> str:
    if value < 60:
        return f"{value:.1f}s"
    if value < 3600:
        return f"{value / 60.0:.1f}m"
    return f"{value / 3600.0:.2f}h"


def _render_ratio(value: float) -> str:
    return f"{value * 100.0:.1f}%"


def _snippet(value: str | None, *, max_chars: int) -> str:
    if not value:
        return "-"
    compact = " ".join(value.split())
    if len(compact) <= max_chars:
        return compact
    return f"{compact[: max_chars - 3]}..."
