"""Tests for the FastAPI server."""
import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from promfile.server import METRICS_MEDIA_TYPE, app


def _get_until(client, url, predicate, timeout=5.0):
    """GET url until predicate(response) holds."""
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(url)
        if predicate(response):
            return response
        if time.monotonic() > deadline:
            raise AssertionError(f"unexpected response from {url}: {response.status_code}")
        time.sleep(0.05)


@pytest.fixture
def metrics_file(tmp_path, monkeypatch):
    """Point the server at a fresh metrics file."""
    file_path = tmp_path / "metrics.txt"
    file_path.write_bytes(b"# TYPE up gauge\nup 1\n")
    monkeypatch.setenv("PROMFILE_PATH", str(file_path))
    monkeypatch.setenv("PROMFILE_POLL_INTERVAL", "0.1")
    monkeypatch.setenv("PROMFILE_RETRY_INTERVAL", "0.1")
    return file_path


class TestHealthEndpoint:
    """Tests for /api/health endpoint."""

    def test_health_check(self, metrics_file):
        with TestClient(app) as client:
            response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestMetricsEndpoint:
    """Tests for /metrics endpoint."""

    def test_serves_file_content(self, metrics_file):
        with TestClient(app) as client:
            response = _get_until(client, "/metrics", lambda r: r.status_code == 200)

        assert response.content == b"# TYPE up gauge\nup 1\n"
        assert response.headers["content-type"] == METRICS_MEDIA_TYPE

    def test_serves_updated_content(self, metrics_file):
        with TestClient(app) as client:
            _get_until(client, "/api/status", lambda r: r.json()["watches"] == 1)

            metrics_file.write_bytes(b"# TYPE up gauge\nup 0\n")

            response = _get_until(
                client, "/metrics", lambda r: r.content == b"# TYPE up gauge\nup 0\n"
            )

        assert response.status_code == 200

    def test_keeps_last_good_content(self, metrics_file):
        with TestClient(app) as client:
            _get_until(client, "/api/status", lambda r: r.json()["watches"] == 1)

            metrics_file.write_bytes(b"")

            _get_until(client, "/api/status", lambda r: r.json()["failures"] >= 1)
            response = client.get("/metrics")

        assert response.content == b"# TYPE up gauge\nup 1\n"

    def test_unavailable_until_file_exists(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROMFILE_PATH", str(tmp_path / "missing.txt"))
        monkeypatch.setenv("PROMFILE_RETRY_INTERVAL", "0.1")

        with TestClient(app) as client:
            response = client.get("/metrics")

        assert response.status_code == 503


class TestStatusEndpoint:
    """Tests for /api/status endpoint."""

    def test_status_fields(self, metrics_file):
        with TestClient(app) as client:
            response = _get_until(client, "/api/status", lambda r: r.json()["watches"] == 1)

        data = response.json()
        assert data["path"] == str(metrics_file)
        assert data["size"] == len(b"# TYPE up gauge\nup 1\n")
        assert data["reloads"] >= 1
        assert data["failures"] == 0
        assert data["lastReload"] > 0


class TestWatchEndpoint:
    """Tests for /api/watch endpoint."""

    def test_missing_file_returns_404(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROMFILE_PATH", str(tmp_path / "missing.txt"))
        monkeypatch.setenv("PROMFILE_RETRY_INTERVAL", "0.1")

        with TestClient(app) as client:
            response = client.get("/api/watch")

        assert response.status_code == 404
        assert "File not found" in response.json()["detail"]


class TestLifespan:
    """Tests for server startup configuration."""

    def test_missing_path_fails_startup(self, monkeypatch):
        monkeypatch.delenv("PROMFILE_PATH", raising=False)

        with pytest.raises(RuntimeError, match="PROMFILE_PATH"):
            with TestClient(app):
                pass

    def test_invalid_poll_interval_fails_startup(self, metrics_file, monkeypatch):
        monkeypatch.setenv("PROMFILE_POLL_INTERVAL", "soon")

        with pytest.raises(RuntimeError, match="PROMFILE_POLL_INTERVAL"):
            with TestClient(app):
                pass


class TestWatchStream:
    """Tests for the /api/watch event stream."""

    def test_stream_ends_when_file_removed(self, metrics_file):
        with TestClient(app) as client:
            _get_until(client, "/api/status", lambda r: r.json()["watches"] == 1)

            # The request returns once the stream is over
            timer = threading.Timer(0.5, metrics_file.unlink)
            timer.start()
            response = client.get("/api/watch")
            timer.join()

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        last_event = response.text.strip().split("\n\n")[-1]
        assert last_event.startswith("event: closed\n")
        payload = json.loads(last_event.split("data: ", 1)[1])
        assert payload["type"] == "closed"
        assert payload["path"] == str(metrics_file)

    def test_stream_reports_write_before_closing(self, metrics_file):
        with TestClient(app) as client:
            _get_until(client, "/api/status", lambda r: r.json()["watches"] == 1)

            write = threading.Timer(0.5, metrics_file.write_bytes, args=(b"up 0\n",))
            remove = threading.Timer(1.5, metrics_file.unlink)
            write.start()
            remove.start()
            response = client.get("/api/watch")
            write.join()
            remove.join()

        events = [event.split("\n", 1)[0] for event in response.text.strip().split("\n\n")]
        assert "event: changed" in events
        assert events[-1] == "event: closed"
