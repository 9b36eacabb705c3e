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
Exception hierarchy shared by the loader, the engine client and the orchestrator.
"""
from enum import Enum
from typing import Optional


class ShipctlError(Exception):
    """Base class for every error shipctl reports to the user."""

    exit_code = 1


class ConfigError(ShipctlError):
    """Invalid or missing service configuration. Never retried."""

    exit_code = 2


class HealthCheckError(ShipctlError):
    """
    A service did not become (or stay) healthy within its probe budget.
    """

    exit_code = 3

    def __init__(self, service: str, failures: int, last_error: Optional[str] = None):
        self.service = service
        self.failures = failures
        self.last_error = last_error
        message = f"Service {service} failed {failures} consecutive health probes"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class StateError(ShipctlError):
    """A persisted state record could not be read or written."""

    exit_code = 4


class EngineErrorKind(str, Enum):
    """
    Failure categories reported by the container engine client.
    """

    BUILD_FAILED = "build_failed"
    TAG_FAILED = "tag_failed"
    PUSH_FAILED = "push_failed"
    PULL_FAILED = "pull_failed"
    RUN_FAILED = "run_failed"
    STOP_FAILED = "stop_failed"
    REMOVE_FAILED = "remove_failed"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


# Exit codes start at 10 and follow declaration order.
_ENGINE_EXIT_CODES = {kind: 10 + index for index, kind in enumerate(EngineErrorKind)}


class EngineError(ShipctlError):
    """
    A docker CLI invocation failed.

    :param kind: Category of the failure.
    :param message: Human-readable description, usually the engine's stderr.
    """

    def __init__(self, kind: EngineErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")

    @property
    def exit_code(self) -> int:
        return _ENGINE_EXIT_CODES[self.kind]


class InvalidTransition(ShipctlError):
    """A container handle was asked to move to a state its lifecycle forbids."""
