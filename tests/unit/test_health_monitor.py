# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for health probes and the health monitor.
"""
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.error import HTTPError, URLError

import pytest

from shipctl.errors import HealthCheckError
from shipctl.MANAGERS.health_monitor import EngineProbe, HealthMonitor, HealthStatus, HttpProbe
from shipctl.MODELS.container_handle import ContainerHandle
from shipctl.MODELS.service_spec import HealthCheck, ServiceSpec


class FakeResponse:
    def __init__(self, status):
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeOpener:
    """Answers every open() with a fixed response or error."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.seen = []

    def open(self, url, timeout):
        self.seen.append((url, timeout))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return FakeResponse(self.outcome)


def make_probe(outcome, timeout=3.0):
    probe = HttpProbe("http://127.0.0.1:3000/health", timeout=timeout)
    probe.opener = FakeOpener(outcome)
    return probe


class RedirectingHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/health":
            self.send_response(302)
            self.send_header("Location", "/ok")
        else:
            self.send_response(200)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def redirecting_server():
    server = HTTPServer(("127.0.0.1", 0), RedirectingHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class TestHttpProbe:
    """Tests for HttpProbe."""

    def test_success(self):
        probe = make_probe(200)
        result = probe()
        assert result.success is True
        assert result.status_code == 200
        assert probe.opener.seen == [("http://127.0.0.1:3000/health", 3.0)]

    def test_http_error_status(self):
        error = HTTPError("http://127.0.0.1:3000/health", 503, "Service Unavailable", None, None)
        result = make_probe(error)()
        assert result.success is False
        assert result.status_code == 503

    def test_non_2xx_status(self):
        result = make_probe(204)()
        assert result.success is True
        result = make_probe(304)()
        assert result.success is False
        assert result.error == "HTTP 304"

    def test_connection_refused(self):
        result = make_probe(URLError(ConnectionRefusedError(111, "Connection refused")))()
        assert result.success is False
        assert result.status_code is None
        assert "Connection refused" in result.error

    def test_redirect_is_not_followed(self, redirecting_server):
        assert HttpProbe(f"{redirecting_server}/ok")().success is True
        result = HttpProbe(f"{redirecting_server}/health")()
        assert result.success is False
        assert result.status_code == 302


class TestEngineProbe:
    """Tests for EngineProbe."""

    def test_running_and_stopped(self, engine):
        spec = ServiceSpec(name="web", image="myapp")
        handle = engine.run(spec)
        probe = EngineProbe(engine, handle)
        assert probe().success is True
        engine.stop(handle)
        result = probe()
        assert result.success is False
        assert "exited" in result.error

    def test_missing_container(self, engine):
        result = EngineProbe(engine, ContainerHandle(name="ghost", image="x"))()
        assert result.success is False
        assert "No such container" in result.error


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    def test_healthy_after_grace_period(self, scripted_probe):
        sleeps = []
        monitor = HealthMonitor("web", HealthCheck(), scripted_probe(True), sleep=sleeps.append)
        result = monitor.wait_until_healthy()
        assert result.success is True
        assert sleeps == [10.0]
        assert monitor.status == HealthStatus.HEALTHY

    def test_recovers_within_budget(self, scripted_probe):
        sleeps = []
        probe = scripted_probe(False, False, True)
        monitor = HealthMonitor("web", HealthCheck(start_period=0, interval=5), probe, sleep=sleeps.append)
        monitor.wait_until_healthy()
        assert probe.calls == 3
        assert sleeps == [5.0, 5.0]
        assert monitor.failing_streak == 0

    def test_budget_exhausted(self, scripted_probe):
        sleeps = []
        probe = scripted_probe(False)
        monitor = HealthMonitor("web", HealthCheck(start_period=0, interval=5, retries=3), probe, sleep=sleeps.append)
        with pytest.raises(HealthCheckError) as exc:
            monitor.wait_until_healthy()
        assert probe.calls == 3
        assert exc.value.failures == 3
        assert exc.value.last_error == "HTTP 503"
        assert sleeps == [5.0, 5.0]
        assert monitor.status == HealthStatus.UNHEALTHY

    def test_exponential_backoff_is_capped(self, scripted_probe):
        sleeps = []
        check = HealthCheck(start_period=0, interval=2, backoff=2, max_interval=5, retries=4)
        monitor = HealthMonitor("web", check, scripted_probe(False), sleep=sleeps.append)
        with pytest.raises(HealthCheckError):
            monitor.wait_until_healthy()
        assert sleeps == [2.0, 4.0, 5.0]

    def test_rolling_window_is_bounded(self, scripted_probe):
        monitor = HealthMonitor("web", HealthCheck(window=2), scripted_probe(True, False, True), sleep=lambda s: None)
        for _ in range(3):
            monitor.probe_once()
        assert [r.success for r in monitor.results] == [False, True]
        assert monitor.probes == 3

    def test_watch_until_budget_exhausted(self, scripted_probe):
        sleeps = []
        probe = scripted_probe(True, False, True, False, False, False)
        monitor = HealthMonitor("web", HealthCheck(interval=30, retries=3), probe, sleep=sleeps.append)
        assert monitor.watch() is False
        assert probe.calls == 6
        assert sleeps == [30.0] * 6

    def test_watch_stops_after_max_probes(self, scripted_probe):
        monitor = HealthMonitor("web", HealthCheck(), scripted_probe(True), sleep=lambda s: None)
        assert monitor.watch(max_probes=4) is True
        assert monitor.probes == 4
