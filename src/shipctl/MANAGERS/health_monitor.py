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
Health probing for deployed services: HTTP and engine-state probes, a
grace period, a consecutive-failure budget and optional exponential backoff.
"""
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, List, Optional
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, ProxyHandler, build_opener

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from ..errors import EngineError, HealthCheckError
from ..MODELS.container_handle import ContainerHandle
from ..MODELS.health import HealthProbeResult
from ..MODELS.service_spec import HealthCheck

logger = logging.getLogger(__name__)

Probe = Callable[[], HealthProbeResult]


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class NoRedirectHandler(HTTPRedirectHandler):
    """Surfaces 3xx answers as HTTPError instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


class HttpProbe:
    """
    GETs a URL; any 2xx answer within the timeout is a success.
    Redirects are not followed and count as failures; proxies are bypassed.
    """

    def __init__(self, url: str, timeout: float = 3.0):
        self.url = url
        self.timeout = timeout
        self.opener = build_opener(ProxyHandler({}), NoRedirectHandler)

    def __call__(self) -> HealthProbeResult:
        start = time.monotonic()
        try:
            with self.opener.open(self.url, timeout=self.timeout) as response:
                status = response.status
        except HTTPError as e:
            return HealthProbeResult(
                success=False,
                latency=time.monotonic() - start,
                status_code=e.code,
                error=f"HTTP {e.code}",
            )
        except (URLError, HTTPException, OSError) as e:
            reason = getattr(e, "reason", e)
            return HealthProbeResult(success=False, latency=time.monotonic() - start, error=str(reason))

        return HealthProbeResult(
            success=200 <= status < 300,
            latency=time.monotonic() - start,
            status_code=status,
            error="" if 200 <= status < 300 else f"HTTP {status}",
        )


class EngineProbe:
    """
    Succeeds while the engine reports the container as running.
    """

    def __init__(self, engine, handle: ContainerHandle):
        self.engine = engine
        self.handle = handle

    def __call__(self) -> HealthProbeResult:
        start = time.monotonic()
        try:
            info = self.engine.inspect(self.handle)
        except EngineError as e:
            return HealthProbeResult(success=False, latency=time.monotonic() - start, error=e.message)
        if info.running:
            return HealthProbeResult(success=True, latency=time.monotonic() - start)
        return HealthProbeResult(
            success=False,
            latency=time.monotonic() - start,
            error=f"container {info.status} (exit code {info.exit_code})",
        )


class HealthMonitor:
    """
    Polls a single service, one probe at a time.

    Keeps a rolling window of recent results; ``failing_streak`` counts the
    consecutive failures at its tail.
    """

    def __init__(
        self,
        name: str,
        check: HealthCheck,
        probe: Probe,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initializes the health monitor.

        :param name: Service name, used in log messages and errors.
        :param check: Timing and budget settings.
        :param probe: Callable performing one probe.
        :param sleep: Sleep function, replaceable in tests.
        """
        self.name = name
        self.check = check
        self.probe = probe
        self.sleep = sleep
        self.status = HealthStatus.STARTING
        self.failing_streak = 0
        self.probes = 0
        self._window: Deque[HealthProbeResult] = deque(maxlen=check.window)

    @property
    def results(self) -> List[HealthProbeResult]:
        return list(self._window)

    @property
    def budget_exhausted(self) -> bool:
        return self.failing_streak >= self.check.retries

    def probe_once(self) -> HealthProbeResult:
        """Runs one probe and records its result."""
        result = self.probe()
        self.probes += 1
        self._window.append(result)
        if result.success:
            self.failing_streak = 0
            self.status = HealthStatus.HEALTHY
            logger.debug("[%s] Probe ok in %.3fs", self.name, result.latency)
        else:
            self.failing_streak += 1
            self.status = HealthStatus.UNHEALTHY
            logger.warning(
                "[%s] Probe failed (%d/%d): %s",
                self.name, self.failing_streak, self.check.retries, result.error,
            )
        return result

    def _wait_strategy(self):
        if self.check.backoff > 1.0:
            return wait_exponential(
                multiplier=self.check.interval,
                exp_base=self.check.backoff,
                max=self.check.max_interval,
            )
        return wait_fixed(self.check.interval)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        logger.info(
            "[%s] Not healthy yet, next probe in %.1fs",
            self.name, retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    def wait_until_healthy(self) -> HealthProbeResult:
        """
        Waits out the grace period, then probes until the first success.

        :return: The successful probe result.
        :raises HealthCheckError: After ``retries`` consecutive failures.
        """
        if self.check.start_period > 0:
            logger.info("[%s] Waiting %.1fs grace period", self.name, self.check.start_period)
            self.sleep(self.check.start_period)

        retrying = Retrying(
            stop=stop_after_attempt(self.check.retries),
            wait=self._wait_strategy(),
            retry=retry_if_exception_type(HealthCheckError),
            sleep=self.sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        result: Optional[HealthProbeResult] = None
        for attempt in retrying:
            with attempt:
                result = self.probe_once()
                if not result.success:
                    raise HealthCheckError(self.name, self.failing_streak, result.error)
        logger.info("[%s] Healthy", self.name)
        return result

    def watch(self, max_probes: Optional[int] = None) -> bool:
        """
        Probes every ``interval`` seconds until the failure budget runs out.

        :param max_probes: Stop after this many probes; ``None`` watches forever.
        :return: False when the budget was exhausted, True when ``max_probes`` was reached.
        """
        probes = 0
        while max_probes is None or probes < max_probes:
            self.sleep(self.check.interval)
            self.probe_once()
            probes += 1
            if self.budget_exhausted:
                return False
        return True

    def reset(self) -> None:
        """Forget the failure streak, e.g. after a restart."""
        self.failing_streak = 0
        self.status = HealthStatus.STARTING
