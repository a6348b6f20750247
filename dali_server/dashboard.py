"""Interactive TUI dashboard for dali-server."""

import logging
import webbrowser
from typing import TYPE_CHECKING, List, Optional, Tuple

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, RichLog, Static

if TYPE_CHECKING:
    from dali_server.server import PayloadServer


# Global buffer for logs before dashboard is mounted
_log_buffer: List[Tuple[str, int]] = []


def _human_bytes(n: int) -> str:
    """Format byte count as human-readable string."""
    if n < 1024:
        return f"{n} B"
    elif n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    elif n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MB"
    else:
        return f"{n / (1024 * 1024 * 1024):.1f} GB"


def _human_speed(bps: float) -> str:
    """Format bytes/sec as human-readable speed string."""
    if bps < 1:
        return "idle"
    elif bps < 1024:
        return f"{bps:.0f} B/s"
    elif bps < 1024 * 1024:
        return f"{bps / 1024:.1f} KB/s"
    else:
        return f"{bps / (1024 * 1024):.1f} MB/s"


class LogHandler(logging.Handler):
    """Logging handler that sends records to the dashboard."""

    def __init__(self, dashboard_app: "DashboardApp" = None):
        super().__init__()
        self.dashboard = dashboard_app

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if self.dashboard is None:
                # Buffer logs until dashboard is ready
                _log_buffer.append((msg, record.levelno))
            else:
                self.dashboard.add_log(msg, record.levelno)
        except Exception:
            self.handleError(record)


class ScopeDataTable(DataTable):
    """A DataTable listing every configured location and its traffic."""

    def __init__(self, server: "PayloadServer", **kwargs):
        super().__init__(**kwargs)
        self.server = server
        self.cursor_type = "row"
        self.zebra_stripes = True

    def on_mount(self) -> None:
        self.add_columns("Location", "Strategy", "Size", "Requests", "Errors", "Traffic", "Received", "Speed", "URL")
        self.refresh_data()

    def refresh_data(self) -> None:
        """Refresh the table data from the server counters."""
        old_cursor_row = self.cursor_row

        self.clear()

        for scope in self.server.config.scopes():
            stats = self.server.stats.for_scope(scope.path).get_stats()
            size_display = "[dim]unset[/dim]" if scope.length is None else _human_bytes(scope.length)
            errors = stats["errors"]
            errors_display = f"[red]{errors}[/red]" if errors else "0"
            traffic_display = _human_bytes(stats["bytes_sent"]) if stats["bytes_sent"] > 0 else "-"
            received_display = _human_bytes(stats["bytes_received"]) if stats["bytes_received"] > 0 else "-"
            url = self.server.url(scope.path)

            self.add_row(
                scope.path,
                scope.strategy.value,
                size_display,
                str(stats["requests"]),
                errors_display,
                traffic_display,
                received_display,
                _human_speed(stats["send_speed"]),
                f"[link={url}]{url}[/link]",
                key=scope.path,
            )

        # Restore cursor position
        if len(self.rows) > 0:
            self.move_cursor(row=min(old_cursor_row or 0, len(self.rows) - 1), animate=False)

    def selected_path(self) -> Optional[str]:
        cursor_row = self.cursor_row
        if cursor_row is None or cursor_row >= len(self.rows):
            return None
        try:
            # Rows are keyed by location path
            row_key = list(self.rows.keys())[cursor_row]
            return row_key.value
        except IndexError:
            return None

    def open_selected_url(self) -> bool:
        """Open the selected location's URL in browser."""
        path = self.selected_path()
        if path is None:
            return False
        url = self.server.url(path)
        webbrowser.open(url)
        self.app.query_one("#status").update(f"[green]Opened {url} in browser[/green]")
        return True


class LogPanel(Vertical):
    """A collapsible log panel."""

    def __init__(self, *children, **kwargs):
        super().__init__(*children, **kwargs)
        self._expanded = True

    def toggle(self) -> None:
        self._expanded = not self._expanded
        self.display = self._expanded


class DashboardApp(App):
    """The main dashboard application."""

    TITLE = "dali-server"
    CSS = """
    #logs_container {
        height: 30%;
        dock: bottom;
    }
    ScopeDataTable {
        height: 1fr;
    }
    #main_content {
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("l", "toggle_logs", "Toggle logs"),
        Binding("o", "open_url", "Open URL"),
    ]

    def __init__(self, server: "PayloadServer", **kwargs):
        super().__init__(**kwargs)
        self.server = server
        self._log_handler: LogHandler = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield Vertical(
            Static(f"[bold cyan]Serving on: {self.server.url()}[/bold cyan]", id="server_info"),
            Static("Press [bold]O[/bold] to open URL, [bold]R[/bold] to refresh, [bold]L[/bold] for logs, [bold]Q[/bold] to quit", id="help"),
            ScopeDataTable(self.server, id="scopes_table"),
            Static("", id="status"),
            LogPanel(
                Static("[bold]Logs[/bold] (press L to close)", id="logs_title"),
                RichLog(id="logs", markup=True, auto_scroll=True, highlight=True),
                id="logs_container",
            ),
            id="main_content",
        )
        yield Footer()

    def on_mount(self) -> None:
        """Set up refresh timer and log handler when mounted."""
        self.set_interval(2, self.auto_refresh)

        self._log_handler = LogHandler(self)
        self._log_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
        server_logger = logging.getLogger("dali-server")
        server_logger.addHandler(self._log_handler)
        # Startup handlers only buffer until the panel exists
        for handler in list(server_logger.handlers):
            if isinstance(handler, LogHandler) and handler.dashboard is None:
                server_logger.removeHandler(handler)

        # Replay any buffered logs
        for msg, level in _log_buffer:
            self.add_log(msg, level)
        _log_buffer.clear()

    def on_unmount(self) -> None:
        logging.getLogger("dali-server").removeHandler(self._log_handler)

    def add_log(self, message: str, level: int) -> None:
        """Add a log message to the log widget."""
        log_widget = self.query_one("#logs", RichLog)

        if level >= logging.ERROR:
            message = f"[red]{message}[/red]"
        elif level >= logging.WARNING:
            message = f"[yellow]{message}[/yellow]"

        log_widget.write(message)

    def auto_refresh(self) -> None:
        table = self.query_one("#scopes_table", ScopeDataTable)
        table.refresh_data()

    def action_refresh(self) -> None:
        self.auto_refresh()
        self.query_one("#status").update("[green]⟳ Refreshed[/green]")

    def action_toggle_logs(self) -> None:
        log_panel = self.query_one("#logs_container", LogPanel)
        log_panel.toggle()

    def action_open_url(self) -> None:
        table = self.query_one("#scopes_table", ScopeDataTable)
        table.open_selected_url()


def run_dashboard(server: "PayloadServer") -> None:
    """Run the dashboard app."""
    app = DashboardApp(server)
    app.run()
