"""
Shared fixtures: an in-memory container engine and a recording sleep.
"""
import itertools

import pytest

from shipctl.errors import EngineError, EngineErrorKind
from shipctl.MANAGERS.lifecycle_orchestrator import LifecycleOrchestrator
from shipctl.MANAGERS.state_tracker import StateTracker
from shipctl.MODELS.container_handle import ContainerHandle, LifecycleState
from shipctl.MODELS.health import HealthProbeResult
from shipctl.RUNTIME.engine_client import ContainerInfo


class FakeEngine:
    """
    Behaves like the docker CLI client, keeping containers in a dict.

    ``fail[op]`` holds errors raised (in order) by the next calls to ``op``.
    """

    def __init__(self):
        self.calls = []
        self.containers = {}
        self.fail = {}
        self._ids = itertools.count(1)

    def _record(self, op, *args):
        self.calls.append((op,) + args)
        pending = self.fail.get(op)
        if pending:
            raise pending.pop(0)

    def count(self, op):
        return sum(1 for call in self.calls if call[0] == op)

    def _lookup(self, handle):
        for name, container in self.containers.items():
            if handle.id == container["id"] or (handle.id is None and handle.name == name):
                return container
        raise EngineError(EngineErrorKind.NOT_FOUND, f"No such container: {handle.id or handle.name}")

    def build(self, spec):
        self._record("build", spec.image_ref)
        return spec.image_ref

    def pull(self, image):
        self._record("pull", image)

    def tag(self, image, alias):
        self._record("tag", image, alias)
        return alias

    def push(self, image):
        self._record("push", image)

    def run(self, spec, image=None):
        image = image or spec.run_ref
        self._record("run", spec.name, image)
        if spec.name in self.containers:
            raise EngineError(
                EngineErrorKind.RUN_FAILED,
                f'Conflict. The container name "/{spec.name}" is already in use',
            )
        container_id = f"c{next(self._ids):03d}"
        self.containers[spec.name] = {"id": container_id, "image": image, "running": True}
        return ContainerHandle(name=spec.name, image=image, id=container_id, state=LifecycleState.RUNNING)

    def start(self, handle):
        self._record("start", handle.name)
        self._lookup(handle)["running"] = True

    def stop(self, handle):
        self._record("stop", handle.name)
        self._lookup(handle)["running"] = False

    def rm(self, handle, force=False):
        self._record("rm", handle.name)
        container = self._lookup(handle)
        if container["running"] and not force:
            raise EngineError(EngineErrorKind.REMOVE_FAILED, "container is running")
        del self.containers[handle.name]

    def inspect(self, handle):
        self._record("inspect", handle.name)
        container = self._lookup(handle)
        return ContainerInfo(
            id=container["id"],
            name=handle.name,
            image=container["image"],
            status="running" if container["running"] else "exited",
            running=container["running"],
            exit_code=None if container["running"] else 0,
        )

    def logs(self, handle, tail=None):
        self._record("logs", handle.name, tail)
        self._lookup(handle)
        return "hello from the container\n"

    def running_with_name(self, name):
        container = self.containers.get(name)
        return 1 if container and container["running"] else 0


class ScriptedProbe:
    """Returns the queued results in order, then repeats the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        success = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if success:
            return HealthProbeResult(success=True, latency=0.01, status_code=200)
        return HealthProbeResult(success=False, latency=0.01, status_code=503, error="HTTP 503")


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def tracker(tmp_path):
    return StateTracker(str(tmp_path / "state"))


@pytest.fixture
def make_orchestrator(engine, tracker, sleeps):
    """Builds an orchestrator whose health probe answers from ``outcomes``."""
    def factory(*outcomes):
        probe = ScriptedProbe(*(outcomes or (True,)))
        orchestrator = LifecycleOrchestrator(
            engine,
            tracker,
            sleep=sleeps.append,
            probe_factory=lambda spec, handle: probe,
        )
        orchestrator.probe = probe
        return orchestrator
    return factory


@pytest.fixture
def scripted_probe():
    """The ScriptedProbe class, for tests that drive a monitor directly."""
    return ScriptedProbe
