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
Lifecycle orchestration for a single service: build, tag, push, run,
health polling, restart and teardown.
"""
import logging
import time
from typing import Callable, Optional

from tenacity import Retrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_fixed

from ..errors import ConfigError, EngineError, EngineErrorKind, HealthCheckError, ShipctlError
from ..MODELS.container_handle import ContainerHandle, LifecycleState
from ..MODELS.service_spec import RestartPolicy, ServiceSpec
from .health_monitor import EngineProbe, HealthMonitor, HttpProbe, Probe
from .state_tracker import StateTracker

logger = logging.getLogger(__name__)

ProbeFactory = Callable[[ServiceSpec, ContainerHandle], Probe]


def _is_retryable_run_failure(error: BaseException) -> bool:
    # A name conflict means another container owns the name; leave it alone.
    return (
        isinstance(error, EngineError)
        and error.kind == EngineErrorKind.RUN_FAILED
        and "already in use" not in error.message
    )


class LifecycleOrchestrator:
    """
    Drives one service through its lifecycle against a container engine.

    Every state change is written to the state tracker before the next
    engine call, so an interrupted run can always be cleaned up by name.
    """
    def __init__(self,
                 engine,
                 tracker: StateTracker,
                 sleep: Callable[[float], None] = time.sleep,
                 probe_factory: Optional[ProbeFactory] = None,
                 run_retry_delay: float = 2.0):
        """
        Initializes the orchestrator.

        :param engine: Container engine client (see ``EngineClient``).
        :param tracker: Persistent store of container handles.
        :param sleep: Sleep function used for every wait, replaceable in tests.
        :param probe_factory: Builds the health probe for a service.
        :param run_retry_delay: Seconds between attempts to start a container.
        """
        self.engine = engine
        self.tracker = tracker
        self.sleep = sleep
        self.probe_factory = probe_factory or self._default_probe
        self.run_retry_delay = run_retry_delay

    def _default_probe(self, spec: ServiceSpec, handle: ContainerHandle) -> Probe:
        hc = spec.health_check
        if not hc.path:
            return EngineProbe(self.engine, handle)
        port = spec.probe_port
        if port is None:
            raise ConfigError(f"{spec.name}: healthcheck path {hc.path} needs a published port")
        return HttpProbe(f"http://{hc.host}:{port}{hc.path}", timeout=hc.timeout)

    def _advance(self, handle: ContainerHandle, state: LifecycleState):
        handle.transition(state)
        self.tracker.save(handle)
        logger.info("[%s] %s", handle.name, state.value)

    def deploy(self, spec: ServiceSpec, force: bool = False) -> ContainerHandle:
        """
        Brings the service to ``healthy``.

        A tracked instance that is already healthy is returned untouched; a
        stopped one is started again instead of running a new container.

        :param spec: The service to deploy.
        :param force: Tear down any tracked instance and deploy from scratch.
        :return: The healthy handle.
        """
        existing = self.tracker.load(spec.name)
        if existing is not None and force:
            logger.info("[%s] Forcing redeploy", spec.name)
            self.teardown(existing)
            existing = None

        if existing is not None:
            reused = self._reuse(spec, existing)
            if reused is not None:
                return reused

        handle = ContainerHandle(name=spec.name, image=spec.run_ref)
        container_may_exist = False
        try:
            self._prepare_image(spec, handle)
            container_may_exist = True
            self._run_container(spec, handle)
            self._await_healthy(spec, handle)
        except KeyboardInterrupt:
            logger.warning("[%s] Interrupted during %s", spec.name, handle.state.value)
            if container_may_exist:
                self.teardown(handle)
            raise
        return handle

    def _reuse(self, spec: ServiceSpec, handle: ContainerHandle) -> Optional[ContainerHandle]:
        """
        Picks up a tracked instance. Returns None when a fresh deploy is needed.
        """
        if handle.state.rank < LifecycleState.RUNNING.rank:
            logger.info("[%s] Previous deploy stopped at %s, starting over", spec.name, handle.state.value)
            return None
        if handle.state in (LifecycleState.STOPPING, LifecycleState.REMOVED):
            self.teardown(handle)
            return None
        if handle.image != spec.run_ref:
            logger.info("[%s] Image changed from %s to %s, replacing container",
                        spec.name, handle.image, spec.run_ref)
            self.teardown(handle)
            return None

        try:
            info = self.engine.inspect(handle)
        except EngineError as e:
            if e.kind != EngineErrorKind.NOT_FOUND:
                raise
            logger.info("[%s] Tracked container is gone, deploying a new one", spec.name)
            self.tracker.delete(spec.name)
            return None

        try:
            if info.running:
                if handle.state == LifecycleState.HEALTHY:
                    logger.info("[%s] Already healthy, nothing to do", spec.name)
                    return handle
                if handle.state == LifecycleState.STOPPED:
                    self._advance(handle, LifecycleState.RUNNING)
            else:
                if handle.state != LifecycleState.STOPPED:
                    self._advance(handle, LifecycleState.STOPPED)
                self.engine.start(handle)
                self._advance(handle, LifecycleState.RUNNING)
            self._await_healthy(spec, handle)
        except KeyboardInterrupt:
            logger.warning("[%s] Interrupted during %s", spec.name, handle.state.value)
            self.teardown(handle)
            raise
        return handle

    def _prepare_image(self, spec: ServiceSpec, handle: ContainerHandle):
        """
        Build (or pull), tag and push. Every step is fatal on error.
        """
        if spec.build is not None:
            self.engine.build(spec)
        else:
            self.engine.pull(spec.image_ref)
        self._advance(handle, LifecycleState.BUILT)

        self.engine.tag(spec.image_ref, spec.run_ref)
        self._advance(handle, LifecycleState.TAGGED)

        if spec.push and (spec.build is not None or spec.registry):
            self.engine.push(spec.run_ref)
            self._advance(handle, LifecycleState.PUSHED)

    def _run_container(self, spec: ServiceSpec, handle: ContainerHandle):
        """
        Starts the container, retrying run failures up to ``spec.run_retries`` times.
        """
        def discard_attempt(retry_state: RetryCallState):
            logger.warning("[%s] Run attempt %d failed: %s",
                           spec.name, retry_state.attempt_number, retry_state.outcome.exception())
            self._remove_quietly(handle)

        retrying = Retrying(
            stop=stop_after_attempt(spec.run_retries),
            wait=wait_fixed(self.run_retry_delay),
            retry=retry_if_exception(_is_retryable_run_failure),
            sleep=self.sleep,
            before_sleep=discard_attempt,
            reraise=True,
        )
        try:
            started = retrying(self.engine.run, spec, spec.run_ref)
        except EngineError as e:
            if _is_retryable_run_failure(e):
                self._remove_quietly(handle)
            raise
        handle.id = started.id
        self._advance(handle, LifecycleState.RUNNING)

    def _await_healthy(self, spec: ServiceSpec, handle: ContainerHandle):
        """
        Polls until healthy. On failure moves to ``stopping`` and tears down once.
        """
        monitor = HealthMonitor(spec.name, spec.health_check, self.probe_factory(spec, handle), sleep=self.sleep)
        try:
            monitor.wait_until_healthy()
        except HealthCheckError:
            self._advance(handle, LifecycleState.STOPPING)
            self.teardown(handle)
            raise
        self._advance(handle, LifecycleState.HEALTHY)

    def _remove_quietly(self, handle: ContainerHandle):
        try:
            self.engine.rm(handle, force=True)
        except EngineError as e:
            if e.kind != EngineErrorKind.NOT_FOUND:
                raise

    def teardown(self, handle: ContainerHandle) -> ContainerHandle:
        """
        Stops and removes the container and forgets it.

        A container that is already stopped or gone counts as success.
        """
        logger.info("[%s] Tearing down", handle.name)
        if handle.can_transition(LifecycleState.STOPPING):
            self._advance(handle, LifecycleState.STOPPING)

        try:
            self.engine.stop(handle)
        except EngineError as e:
            if e.kind != EngineErrorKind.NOT_FOUND:
                raise
            logger.debug("[%s] Already gone before stop", handle.name)
        if handle.can_transition(LifecycleState.STOPPED):
            handle.transition(LifecycleState.STOPPED)

        self._remove_quietly(handle)
        if handle.can_transition(LifecycleState.REMOVED):
            handle.transition(LifecycleState.REMOVED)
        self.tracker.delete(handle.name)
        logger.info("[%s] removed", handle.name)
        return handle

    def stop(self, name: str) -> Optional[ContainerHandle]:
        """
        Stops the service's container but keeps it for a later deploy.

        :return: The stopped handle, or None if nothing is tracked.
        """
        handle = self.tracker.load(name)
        if handle is None:
            logger.info("[%s] Not tracked, nothing to stop", name)
            return None
        if handle.state.rank < LifecycleState.RUNNING.rank:
            logger.info("[%s] No container started yet", name)
            return handle
        if handle.state in (LifecycleState.STOPPING, LifecycleState.REMOVED):
            self.teardown(handle)
            return None

        try:
            self.engine.stop(handle)
        except EngineError as e:
            if e.kind != EngineErrorKind.NOT_FOUND:
                raise
            logger.info("[%s] Container already gone", name)
            self.tracker.delete(name)
            return None

        if handle.state != LifecycleState.STOPPED:
            self._advance(handle, LifecycleState.STOPPED)
        return handle

    def remove(self, name: str) -> bool:
        """
        Tears down the tracked container of ``name``.

        :return: False if the service was not tracked.
        """
        handle = self.tracker.load(name)
        if handle is None:
            return False
        self.teardown(handle)
        return True

    def status(self, name: str) -> LifecycleState:
        """
        Reports the service state, reconciled against the engine.
        """
        handle = self.tracker.load(name)
        if handle is None:
            return LifecycleState.ABSENT
        if handle.state.rank < LifecycleState.RUNNING.rank:
            return handle.state

        try:
            info = self.engine.inspect(handle)
        except EngineError as e:
            if e.kind != EngineErrorKind.NOT_FOUND:
                raise
            self.tracker.delete(name)
            return LifecycleState.ABSENT

        if handle.state.is_active and not info.running:
            self._advance(handle, LifecycleState.STOPPED)
        elif handle.state == LifecycleState.STOPPED and info.running:
            self._advance(handle, LifecycleState.RUNNING)
        return handle.state

    def logs(self, name: str, tail: Optional[int] = None) -> str:
        handle = self.tracker.load(name) or ContainerHandle(name=name, image="")
        return self.engine.logs(handle, tail=tail)

    def supervise(self, spec: ServiceSpec, max_probes: Optional[int] = None) -> ContainerHandle:
        """
        Keeps probing a deployed service.

        When the failure budget runs out the restart policy decides between
        restarting the container (up to ``max_restarts`` times) and tearing
        it down. An interrupt tears the service down.

        :param spec: The deployed service.
        :param max_probes: Stop watching after this many probes.
        :raises HealthCheckError: When the service is torn down.
        """
        handle = self.tracker.load(spec.name)
        if handle is None or not handle.state.is_active:
            raise ShipctlError(f"{spec.name} is not running, deploy it first")

        monitor = HealthMonitor(spec.name, spec.health_check, self.probe_factory(spec, handle), sleep=self.sleep)
        restarts = 0
        try:
            while True:
                remaining = None if max_probes is None else max_probes - monitor.probes
                if remaining is not None and remaining <= 0:
                    return handle
                if monitor.watch(max_probes=remaining):
                    return handle

                last_error = monitor.results[-1].error if monitor.results else None
                if not self._should_restart(spec) or restarts >= spec.health_check.max_restarts:
                    self._advance(handle, LifecycleState.STOPPING)
                    self.teardown(handle)
                    raise HealthCheckError(spec.name, monitor.failing_streak, last_error)

                restarts += 1
                logger.warning("[%s] Unhealthy, restarting (attempt %d/%d)",
                               spec.name, restarts, spec.health_check.max_restarts)
                if not self._restart(handle):
                    self.teardown(handle)
                    raise HealthCheckError(spec.name, monitor.failing_streak, last_error)
                monitor.reset()
                self._await_healthy(spec, handle)
        except KeyboardInterrupt:
            logger.warning("[%s] Interrupted while watching", spec.name)
            if handle.state != LifecycleState.REMOVED:
                self.teardown(handle)
            raise

    def _should_restart(self, spec: ServiceSpec) -> bool:
        """
        Decides whether an unhealthy service is restarted based on its policy.
        """
        return spec.restart_policy in (
            RestartPolicy.ALWAYS,
            RestartPolicy.UNLESS_STOPPED,
            RestartPolicy.ON_FAILURE,
        )

    def _restart(self, handle: ContainerHandle) -> bool:
        """
        Stops and starts the container in place.

        :return: False when the engine no longer has the container.
        """
        try:
            self.engine.stop(handle)
            self._advance(handle, LifecycleState.STOPPED)
            self.engine.start(handle)
        except EngineError as e:
            if e.kind != EngineErrorKind.NOT_FOUND:
                raise
            logger.warning("[%s] Container is gone, cannot restart it", handle.name)
            return False
        self._advance(handle, LifecycleState.RUNNING)
        return True
