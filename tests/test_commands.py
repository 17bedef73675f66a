import io
import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from minicord.cli.commands import _Transcript, app
from minicord.config.loader import load_config, save_config
from minicord.config.schema import Config
from minicord.sync.errors import TransportError
from minicord.sync.events import Message
from minicord.sync.history import HistoryFetcher, HistoryPage
from minicord.sync.store import MessageStore

runner = CliRunner()


@pytest.fixture
def mock_paths():
    """Mock config paths for test isolation."""
    with patch("minicord.config.loader.get_config_path") as mock_cp:
        base_dir = Path("./test_onboard_data")
        if base_dir.exists():
            shutil.rmtree(base_dir)
        base_dir.mkdir()

        config_file = base_dir / "config.json"
        mock_cp.return_value = config_file

        yield config_file

        if base_dir.exists():
            shutil.rmtree(base_dir)


def _config_with_token() -> Config:
    config = Config()
    config.server.token = "tok-123456"
    return config


def _page(start: int, stop: int) -> HistoryPage:
    return HistoryPage(
        Message(
            id=i, channel_id=7, user_id=1, content=f"msg{i}",
            created_at=datetime(2025, 1, 1, 0, 0, i, tzinfo=timezone.utc), user_name="alice",
        )
        for i in range(start, stop)
    )


def test_onboard_fresh_install(mock_paths):
    config_file = mock_paths

    result = runner.invoke(app, ["onboard"])

    assert result.exit_code == 0
    assert "Created config" in result.stdout
    assert "minicord is ready" in result.stdout
    data = json.loads(config_file.read_text())
    assert data["server"]["wsUrl"] == "ws://localhost:8080/ws"
    assert data["sync"]["pageSize"] == 50


def test_onboard_existing_config_refresh(mock_paths):
    config_file = mock_paths
    config_file.write_text(json.dumps({"server": {"token": "keep-me"}}))

    result = runner.invoke(app, ["onboard"], input="n\n")

    assert result.exit_code == 0
    assert "existing values preserved" in result.stdout
    assert json.loads(config_file.read_text())["server"]["token"] == "keep-me"


def test_status_masks_token(mock_paths):
    config_file = mock_paths
    save_config(_config_with_token(), config_file)

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "tok-123456" not in result.stdout
    assert "3456" in result.stdout


def test_history_requires_token(mock_paths):
    result = runner.invoke(app, ["history", "7"])

    assert result.exit_code == 1
    assert "No token configured" in result.stdout


def test_history_pages_until_exhausted():
    fetch = AsyncMock(side_effect=[_page(3, 5), _page(1, 3), HistoryPage()])
    with patch("minicord.config.loader.load_config", return_value=_config_with_token()), \
         patch.object(HistoryFetcher, "fetch_page", new=fetch):
        result = runner.invoke(app, ["history", "7", "--limit", "2", "--all"])

    assert result.exit_code == 0
    assert [c.args[1] for c in fetch.call_args_list] == [None, 3, 1]
    for i in range(1, 5):
        assert f"msg{i}" in result.stdout


def test_history_reports_transport_error():
    fetch = AsyncMock(side_effect=TransportError("connection refused"))
    with patch("minicord.config.loader.load_config", return_value=_config_with_token()), \
         patch.object(HistoryFetcher, "fetch_page", new=fetch):
        result = runner.invoke(app, ["history", "7"])

    assert result.exit_code == 1
    assert "connection refused" in result.stdout


def test_load_config_accepts_snake_case_and_falls_back(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"sync": {"page_size": 25, "reconnectDelayMs": 100}}))
    config = load_config(path)
    assert config.sync.page_size == 25
    assert config.sync.reconnect_delay_ms == 100

    path.write_text("{not json")
    assert load_config(path).sync.page_size == 50

    path.write_text(json.dumps({"sync": {"pageSize": 500}}))
    assert load_config(path).sync.page_size == 50


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "minicord v" in result.stdout


def test_transcript_prints_older_pages_in_an_earlier_block():
    out = Console(file=io.StringIO(), width=100, color_system=None)
    transcript = _Transcript(out)
    store = MessageStore(7)

    store.seed(_page(5, 8))
    transcript(store)
    store.merge_older(_page(2, 5))
    transcript(store)
    store.append(_page(8, 9)[0])
    transcript(store)
    transcript(store)

    lines = [line for line in out.file.getvalue().splitlines() if line.strip()]
    expected = ["msg5", "msg6", "msg7", "earlier messages", "msg2", "msg3", "msg4", None, "msg8"]
    assert len(lines) == len(expected)
    for line, needle in zip(lines, expected):
        if needle is None:
            assert "msg" not in line
        else:
            assert needle in line
