"""Tests for the command-line interface."""
import os

import pytest
from typer.testing import CliRunner

from promfile import cli


runner = CliRunner()


@pytest.fixture
def server_calls(monkeypatch):
    """Record uvicorn.run calls instead of starting a server."""
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    # Restore the environment written by the command
    monkeypatch.delenv("PROMFILE_PATH", raising=False)
    monkeypatch.delenv("PROMFILE_POLL_INTERVAL", raising=False)
    monkeypatch.delenv("PROMFILE_RETRY_INTERVAL", raising=False)
    return calls


def test_starts_server(tmp_path, server_calls):
    file_path = tmp_path / "metrics.txt"
    file_path.write_text("up 1\n")

    result = runner.invoke(cli.app, [str(file_path), "--port", "9100", "--poll-interval", "2"])

    assert result.exit_code == 0
    assert "Serving" in result.output
    assert len(server_calls) == 1
    args, kwargs = server_calls[0]
    assert args == ("promfile.server:app",)
    assert kwargs["port"] == 9100
    assert kwargs["log_level"] == "info"
    assert os.environ["PROMFILE_PATH"] == str(file_path)
    assert float(os.environ["PROMFILE_POLL_INTERVAL"]) == 2.0
    assert float(os.environ["PROMFILE_RETRY_INTERVAL"]) == 1.0


def test_missing_file_exits(tmp_path, server_calls):
    result = runner.invoke(cli.app, [str(tmp_path / "missing.txt")])

    assert result.exit_code == 1
    assert server_calls == []


def test_empty_file_exits(tmp_path, server_calls):
    file_path = tmp_path / "metrics.txt"
    file_path.write_text("")

    result = runner.invoke(cli.app, [str(file_path)])

    assert result.exit_code == 1
    assert server_calls == []


def test_unknown_log_level_exits(tmp_path, server_calls):
    file_path = tmp_path / "metrics.txt"
    file_path.write_text("up 1\n")

    result = runner.invoke(cli.app, [str(file_path), "--log-level", "loud"])

    assert result.exit_code == 1
    assert server_calls == []
