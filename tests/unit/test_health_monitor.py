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
Unit tests for the liveness probe.
"""
import threading
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

from p2i.MANAGERS.health_monitor import (
    HealthMonitor,
    HttpProbe,
    ProbeResult,
    ProbeState,
    ProbeTracker,
)
from p2i.MODELS.runtime_contract import LivenessProbe

FAIL = ProbeResult(False, "connection refused")
OK = ProbeResult(True, "OK")


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestProbeTracker:
    """Tests for the probe state machine."""

    def test_starts_starting(self):
        tracker = ProbeTracker(LivenessProbe())
        assert tracker.health.status == ProbeState.STARTING

    def test_failures_in_start_period_do_not_count(self):
        tracker = ProbeTracker(LivenessProbe(start_period=5, retries=3), started_at=0.0)
        for at in (1.0, 2.0, 3.0, 4.9):
            assert tracker.record(FAIL, at) == ProbeState.STARTING
        assert tracker.health.failing_streak == 0
        assert tracker.health.checks == 4

    def test_three_failures_after_start_period(self):
        tracker = ProbeTracker(LivenessProbe(start_period=5, retries=3), started_at=0.0)
        assert tracker.record(FAIL, 6.0) == ProbeState.STARTING
        assert tracker.record(FAIL, 21.0) == ProbeState.STARTING
        assert tracker.record(FAIL, 36.0) == ProbeState.UNHEALTHY
        assert tracker.health.failing_streak == 3
        assert tracker.health.last_output == "connection refused"

    def test_success_resets_streak(self):
        tracker = ProbeTracker(LivenessProbe(start_period=0, retries=3), started_at=0.0)
        tracker.record(FAIL, 1.0)
        tracker.record(FAIL, 2.0)
        assert tracker.record(OK, 3.0) == ProbeState.HEALTHY
        assert tracker.health.failing_streak == 0
        tracker.record(FAIL, 4.0)
        tracker.record(FAIL, 5.0)
        assert tracker.health.status == ProbeState.HEALTHY
        assert tracker.record(FAIL, 6.0) == ProbeState.UNHEALTHY
        assert tracker.record(OK, 7.0) == ProbeState.HEALTHY

    def test_success_during_start_period(self):
        tracker = ProbeTracker(LivenessProbe(start_period=5), started_at=0.0)
        assert tracker.record(OK, 1.0) == ProbeState.HEALTHY

    def test_start_period_ends_after_first_success(self):
        tracker = ProbeTracker(LivenessProbe(start_period=5, retries=1), started_at=0.0)
        assert tracker.record(OK, 1.0) == ProbeState.HEALTHY
        assert tracker.record(FAIL, 2.0) == ProbeState.UNHEALTHY
        assert tracker.health.failing_streak == 1


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    def test_on_unhealthy_called_once(self):
        clock = FakeClock()
        events = []
        monitor = HealthMonitor(
            LivenessProbe(start_period=5, retries=3),
            check=lambda: FAIL,
            on_unhealthy=events.append,
            clock=clock,
        )
        clock.now += 1
        assert monitor.run_once() == ProbeState.STARTING
        for _ in range(3):
            clock.now += 15
            monitor.run_once()
        clock.now += 15
        assert monitor.run_once() == ProbeState.UNHEALTHY
        assert len(events) == 1
        assert events[0].failing_streak == 4
        assert monitor.health.checks == 5

    def test_slow_failure_issued_in_start_period_not_counted(self):
        clock = FakeClock()

        def timing_out():
            clock.now += 5
            return ProbeResult(False, "Health check timed out")

        monitor = HealthMonitor(LivenessProbe(start_period=5, retries=1), check=timing_out, clock=clock)
        clock.now += 1
        assert monitor.run_once() == ProbeState.STARTING
        assert monitor.health.failing_streak == 0

        # Issued at +6s, past the start period
        assert monitor.run_once() == ProbeState.UNHEALTHY
        assert monitor.health.failing_streak == 1

    def test_recovery_fires_again(self):
        clock = FakeClock()
        results = iter([FAIL, OK, FAIL])
        events = []
        monitor = HealthMonitor(
            LivenessProbe(start_period=0, retries=1),
            check=lambda: next(results),
            on_unhealthy=events.append,
            clock=clock,
        )
        assert [monitor.run_once() for _ in range(3)] == [
            ProbeState.UNHEALTHY, ProbeState.HEALTHY, ProbeState.UNHEALTHY,
        ]
        assert len(events) == 2

    def test_thread_start_stop(self):
        called = threading.Event()

        def check():
            called.set()
            return OK

        monitor = HealthMonitor(LivenessProbe(interval=0.01, timeout=0.1), check=check)
        monitor.start()
        assert called.wait(2)
        monitor.stop()
        assert not monitor.thread.is_alive()
        assert monitor.health.status == ProbeState.HEALTHY


class TestHttpProbe:
    """Tests for the HTTP probe, with urlopen patched."""

    def test_success(self):
        response = MagicMock()
        response.status = 200
        response.read.return_value = b"OK"
        urlopen = MagicMock()
        urlopen.return_value.__enter__.return_value = response
        with patch("p2i.MANAGERS.health_monitor.urlopen", urlopen):
            result = HttpProbe("http://localhost:8008/health", 5).check()
        assert result == ProbeResult(True, "OK")
        assert urlopen.call_args[1]["timeout"] == 5

    def test_http_error(self):
        error = HTTPError("http://localhost:8008/health", 503, "unavailable", {}, None)
        with patch("p2i.MANAGERS.health_monitor.urlopen", MagicMock(side_effect=error)):
            result = HttpProbe("http://localhost:8008/health", 5).check()
        assert result == ProbeResult(False, "HTTP 503")

    def test_connection_refused(self):
        error = URLError("connection refused")
        with patch("p2i.MANAGERS.health_monitor.urlopen", MagicMock(side_effect=error)):
            result = HttpProbe("http://localhost:8008/health", 5).check()
        assert not result.success

    def test_timeout(self):
        with patch("p2i.MANAGERS.health_monitor.urlopen", MagicMock(side_effect=TimeoutError())):
            result = HttpProbe("http://localhost:8008/health", 5).check()
        assert result == ProbeResult(False, "Health check timed out")
