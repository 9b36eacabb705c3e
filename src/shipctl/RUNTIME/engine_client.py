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
Blocking client for the container engine, driven through the docker CLI.
"""
import json
import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

from ..errors import EngineError, EngineErrorKind
from ..MODELS.container_handle import ContainerHandle, LifecycleState
from ..MODELS.service_spec import ServiceSpec

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("no such container", "no such object", "no such image")


def _text(output) -> str:
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output or ""


@dataclass
class CommandResult:
    """Outcome of one engine invocation."""

    command: str
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_sec: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class ContainerInfo:
    """The subset of ``docker inspect`` output the orchestrator relies on."""

    id: str
    name: str
    image: str
    status: str
    running: bool
    exit_code: Optional[int] = None


class EngineClient:
    """
    Thin wrapper over the docker CLI.

    Every call blocks until the engine answers. Failures raise
    :class:`EngineError`; nothing is retried here.
    """

    def __init__(self, binary: str = "docker", timeout: Optional[float] = None, stop_timeout: int = 10):
        """
        :param binary: Engine executable.
        :param timeout: Upper bound in seconds for a single call, ``None`` for no limit.
        :param stop_timeout: Seconds the engine waits before killing a stopping container.
        """
        self.binary = binary
        self.timeout = timeout
        self.stop_timeout = stop_timeout

    def _run(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        """
        Runs one engine command and captures its output.

        An interrupt kills the child process and propagates to the caller.
        """
        argv = [self.binary] + args
        command = " ".join(shlex.quote(a) for a in argv)
        start = time.monotonic()
        logger.debug("Running: %s", command)
        try:
            proc = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise EngineError(EngineErrorKind.UNAVAILABLE, f"{self.binary} executable not found") from e
        except subprocess.TimeoutExpired as e:
            result = CommandResult(
                command=command,
                exit_code=None,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr),
                duration_sec=time.monotonic() - start,
                timed_out=True,
            )
        else:
            result = CommandResult(
                command=command,
                exit_code=proc.returncode,
                stdout=proc.stdout or "",
                stderr=proc.stderr or "",
                duration_sec=time.monotonic() - start,
            )
        logger.debug("Finished in %.2fs with exit code %s: %s", result.duration_sec, result.exit_code, command)
        return result

    def _check(self, result: CommandResult, kind: EngineErrorKind) -> CommandResult:
        """
        Raises an :class:`EngineError` of ``kind`` unless the command succeeded.
        """
        if result.ok:
            return result
        if result.timed_out:
            raise EngineError(kind, f"timed out: {result.command}")
        output = (result.stderr or result.stdout).strip()
        if any(marker in output.lower() for marker in _NOT_FOUND_MARKERS):
            kind = EngineErrorKind.NOT_FOUND
        raise EngineError(kind, output or f"exit code {result.exit_code}: {result.command}")

    @staticmethod
    def _ref(handle: ContainerHandle) -> str:
        return handle.id or handle.name

    def build(self, spec: ServiceSpec) -> str:
        """
        Builds the service image and tags it ``image:tag``.

        :return: The local image reference.
        """
        if spec.build is None:
            raise EngineError(EngineErrorKind.BUILD_FAILED, f"{spec.name} has no build context")
        args = ["build", "-t", spec.image_ref]
        if spec.build.dockerfile:
            args += ["-f", spec.build.dockerfile]
        for key, value in spec.build.args.items():
            args += ["--build-arg", f"{key}={value}"]
        args.append(spec.build.context)
        logger.info("[%s] Building %s from %s", spec.name, spec.image_ref, spec.build.context)
        self._check(self._run(args), EngineErrorKind.BUILD_FAILED)
        return spec.image_ref

    def tag(self, image: str, alias: str) -> str:
        logger.info("Tagging %s as %s", image, alias)
        self._check(self._run(["tag", image, alias]), EngineErrorKind.TAG_FAILED)
        return alias

    def push(self, image: str) -> None:
        logger.info("Pushing %s", image)
        self._check(self._run(["push", image]), EngineErrorKind.PUSH_FAILED)

    def pull(self, image: str) -> None:
        logger.info("Pulling %s", image)
        self._check(self._run(["pull", image]), EngineErrorKind.PULL_FAILED)

    def run(self, spec: ServiceSpec, image: Optional[str] = None) -> ContainerHandle:
        """
        Creates and starts a detached container named after the service.

        :param spec: Service to run.
        :param image: Image reference, defaults to ``spec.run_ref``.
        :return: A handle in the ``running`` state carrying the engine id.
        """
        image = image or spec.run_ref
        args = ["run", "-d", "--name", spec.name, "--restart", spec.restart_policy.value]
        for port in spec.ports:
            args += ["-p", port.to_engine_arg()]
        for volume in spec.volumes:
            args += ["-v", volume.to_engine_arg()]
        if spec.env_file:
            args += ["--env-file", spec.env_file]
        for key, value in spec.environment.items():
            args += ["-e", f"{key}={value}"]
        args.append(image)

        logger.info("[%s] Starting container from %s", spec.name, image)
        result = self._check(self._run(args), EngineErrorKind.RUN_FAILED)
        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else None
        return ContainerHandle(name=spec.name, image=image, id=container_id, state=LifecycleState.RUNNING)

    def start(self, handle: ContainerHandle) -> None:
        logger.info("[%s] Starting existing container", handle.name)
        self._check(self._run(["start", self._ref(handle)]), EngineErrorKind.RUN_FAILED)

    def stop(self, handle: ContainerHandle) -> None:
        """
        Stops a container. Stopping an already stopped container succeeds;
        a missing one raises ``NOT_FOUND``.
        """
        logger.info("[%s] Stopping container", handle.name)
        args = ["stop", "-t", str(self.stop_timeout), self._ref(handle)]
        self._check(self._run(args), EngineErrorKind.STOP_FAILED)

    def rm(self, handle: ContainerHandle, force: bool = False) -> None:
        logger.info("[%s] Removing container", handle.name)
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(self._ref(handle))
        self._check(self._run(args), EngineErrorKind.REMOVE_FAILED)

    def logs(self, handle: ContainerHandle, tail: Optional[int] = None) -> str:
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        args.append(self._ref(handle))
        result = self._check(self._run(args), EngineErrorKind.NOT_FOUND)
        return result.stdout + result.stderr

    def inspect(self, handle: ContainerHandle) -> ContainerInfo:
        """
        Reads the container's current state from the engine.

        :raises EngineError: ``NOT_FOUND`` when the engine has no such container.
        """
        result = self._check(
            self._run(["inspect", "--type", "container", self._ref(handle)]),
            EngineErrorKind.NOT_FOUND,
        )
        try:
            data = json.loads(result.stdout)[0]
            state = data.get("State", {})
            return ContainerInfo(
                id=data["Id"],
                name=data.get("Name", "").lstrip("/"),
                image=data.get("Config", {}).get("Image", ""),
                status=state.get("Status", "unknown"),
                running=bool(state.get("Running")),
                exit_code=state.get("ExitCode"),
            )
        except (ValueError, KeyError, IndexError) as e:
            raise EngineError(EngineErrorKind.NOT_FOUND, f"Unreadable inspect output for {handle.name}: {e}") from e
