"""Integration tests for dali-server dashboard using Textual Pilot API."""

import pytest
from unittest.mock import Mock, patch

from dali_server.config import Location, PayloadConfig, SizeConfig
from dali_server.dashboard import DashboardApp, ScopeDataTable
from dali_server.planner import Strategy
from dali_server.stats import ServerStats


@pytest.fixture(autouse=True)
def mock_webbrowser_open():
    """Mock webbrowser.open to prevent actual browser opening during tests."""
    with patch("webbrowser.open") as mock:
        yield mock


def make_server(*locations):
    """Build a mock server around a real config and real counters."""
    config = PayloadConfig(list(locations))
    config.finalize()

    mock_server = Mock()
    mock_server.config = config
    mock_server.stats = ServerStats()
    mock_server.url = Mock(side_effect=lambda path="/": f"http://127.0.0.1:8080{path}")
    return mock_server


@pytest.mark.asyncio
async def test_dashboard_compose_and_render():
    """Test that the dashboard can be composed and rendered without errors."""
    mock_server = make_server(
        Location("/", SizeConfig(1024 * 1024)),
        Location("/small", SizeConfig(10000), Strategy.PATTERN),
        Location("/timed", SizeConfig(512), Strategy.TIMED),
    )

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        await pilot.pause()
        table = app.query_one("#scopes_table", ScopeDataTable)
        assert len(table.rows) == 3


@pytest.mark.asyncio
async def test_dashboard_with_single_location():
    """Test that the dashboard works with only the root location."""
    mock_server = make_server(Location("/", SizeConfig(0)))

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        await pilot.pause()
        table = app.query_one("#scopes_table", ScopeDataTable)
        assert table.selected_path() == "/"


@pytest.mark.asyncio
async def test_dashboard_keyboard_navigation():
    """Test keyboard navigation in the dashboard."""
    mock_server = make_server(
        Location("/", SizeConfig(500)),
        Location("/a", SizeConfig(100)),
    )

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        # Test pressing 'r' for refresh
        await pilot.press("r")
        await pilot.pause()

        # Test pressing 'q' to quit (this should exit the pilot)
        await pilot.press("q")


@pytest.mark.asyncio
async def test_dashboard_refresh_shows_new_traffic():
    """Test that counters recorded after mount show up on refresh."""
    mock_server = make_server(Location("/", SizeConfig(500)))

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        scope_stats = mock_server.stats.for_scope("/")
        scope_stats.requests = 3
        scope_stats.bytes_sent = 1500
        scope_stats.bytes_received = 2048

        await pilot.press("r")
        await pilot.pause()

        table = app.query_one("#scopes_table", ScopeDataTable)
        row = table.get_row_at(0)
        assert row[3] == "3"
        assert row[5] == "1.5 KB"
        assert row[6] == "2.0 KB"


@pytest.mark.asyncio
async def test_dashboard_click_selector():
    """Test clicking on widgets using selectors."""
    mock_server = make_server(Location("/", SizeConfig(500)))

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        # Try to click on the table (should not crash)
        await pilot.click("#scopes_table")
        await pilot.pause()


@pytest.mark.asyncio
async def test_dashboard_open_url(mock_webbrowser_open):
    """Test pressing 'O' opens the selected location in browser."""
    mock_server = make_server(
        Location("/", SizeConfig(500)),
        Location("/small", SizeConfig(100)),
    )

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        await pilot.press("down")  # Move to second row
        await pilot.pause()
        await pilot.press("o")
        await pilot.pause()
        mock_webbrowser_open.assert_called_once_with("http://127.0.0.1:8080/small")


@pytest.mark.asyncio
async def test_dashboard_toggle_logs():
    """Test pressing 'L' hides and shows the log panel."""
    mock_server = make_server(Location("/", SizeConfig(500)))

    app = DashboardApp(mock_server)

    async with app.run_test() as pilot:
        panel = app.query_one("#logs_container")
        assert panel.display is True

        await pilot.press("l")
        await pilot.pause()
        assert panel.display is False

        await pilot.press("l")
        await pilot.pause()
        assert panel.display is True
