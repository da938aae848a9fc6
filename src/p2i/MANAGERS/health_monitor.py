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
Liveness probing for a running server image, following the orchestrator
rules the image's HEALTHCHECK declares: a start period during which failures
do not count, then a fixed number of consecutive failures before the
container is reported unhealthy.
"""
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from ..MODELS.runtime_contract import LivenessProbe
from ..UTILS.log_config import get_logger

logger = get_logger(__name__)


class ProbeState(str, Enum):
    """Health status of the container."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class ProbeResult:
    """Outcome of a single probe."""

    success: bool
    output: str = ""


@dataclass
class ContainerHealth:
    """Health information as an orchestrator would report it."""

    status: ProbeState = ProbeState.STARTING
    failing_streak: int = 0
    checks: int = 0
    last_check: Optional[str] = None
    last_output: str = ""


class HttpProbe:
    """
    Issues the health request. Anything but a 2xx answer within the timeout
    is a failure.
    """

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout

    def check(self) -> ProbeResult:
        try:
            with urlopen(self.url, timeout=self.timeout) as response:
                body = response.read(500).decode("utf-8", errors="replace")
                if 200 <= response.status < 300:
                    return ProbeResult(True, body)
                return ProbeResult(False, f"HTTP {response.status}")
        except HTTPError as e:
            return ProbeResult(False, f"HTTP {e.code}")
        except (socket.timeout, TimeoutError):
            return ProbeResult(False, "Health check timed out")
        except (URLError, OSError) as e:
            return ProbeResult(False, str(e))


class ProbeTracker:
    """
    Turns a sequence of timestamped probe results into a health state.
    """

    def __init__(self, probe: LivenessProbe, started_at: float = 0.0):
        """
        :param probe: The probe policy.
        :param started_at: Container start time, on the same clock as record().
        """
        self.probe = probe
        self.started_at = started_at
        self.health = ContainerHealth()

    def in_start_period(self, at: float) -> bool:
        return at - self.started_at < self.probe.start_period

    def record(self, result: ProbeResult, at: float) -> ProbeState:
        """
        Applies one probe result.

        :param result: The probe outcome.
        :param at: When the probe was issued.
        :return: The resulting state.
        """
        health = self.health
        health.checks += 1
        health.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        health.last_output = result.output

        if result.success:
            health.status = ProbeState.HEALTHY
            health.failing_streak = 0
            return health.status

        # Failures of probes issued during the start period are not counted
        # until the container has been healthy once
        if health.status == ProbeState.STARTING and self.in_start_period(at):
            return health.status

        health.failing_streak += 1
        if health.failing_streak >= self.probe.retries:
            health.status = ProbeState.UNHEALTHY
        return health.status


class HealthMonitor:
    """
    Probes a container periodically and reports when it becomes unhealthy.
    What to do then (restart, alert) is up to the caller.
    """

    def __init__(
        self,
        probe: LivenessProbe,
        check: Optional[Callable[[], ProbeResult]] = None,
        on_unhealthy: Optional[Callable[[ContainerHealth], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the health monitor.

        :param probe: The probe policy (interval, timeout, start period, retries).
        :param check: Probe callable; defaults to an HTTP GET of probe.url.
        :param on_unhealthy: Called once each time the state turns unhealthy.
        :param clock: Time source, in seconds.
        """
        self.probe = probe
        self.check = check or HttpProbe(probe.url, probe.timeout).check
        self.on_unhealthy = on_unhealthy
        self.clock = clock
        self.tracker = ProbeTracker(probe, started_at=clock())
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()

    @property
    def health(self) -> ContainerHealth:
        return self.tracker.health

    def run_once(self) -> ProbeState:
        """
        Runs one probe and updates the state.
        """
        previous = self.tracker.health.status
        issued = self.clock()
        result = self.check()
        state = self.tracker.record(result, issued)
        logger.debug("Probe %s: %s (%s)", self.probe.url, state.value, result.output[:80])
        if state == ProbeState.UNHEALTHY and previous != ProbeState.UNHEALTHY:
            logger.warning(
                "%s is unhealthy after %d failed probes",
                self.probe.url, self.tracker.health.failing_streak,
            )
            if self.on_unhealthy:
                self.on_unhealthy(self.tracker.health)
        return state

    def start(self):
        """
        Starts the monitoring thread.
        """
        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the monitoring thread.
        """
        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=self.probe.timeout + 1)

    def _monitor_loop(self):
        while self.running:
            self.run_once()
            self._stop_event.wait(self.probe.interval)
