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
Tracked reference to one container instance and its lifecycle state machine.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidTransition


class LifecycleState(str, Enum):
    """Lifecycle of a deployed service, in forward order."""

    ABSENT = "absent"
    BUILT = "built"
    TAGGED = "tagged"
    PUSHED = "pushed"
    RUNNING = "running"
    HEALTHY = "healthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVED = "removed"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    @property
    def is_active(self) -> bool:
        """True while the container holds its name in the engine as running."""
        return self in (LifecycleState.RUNNING, LifecycleState.HEALTHY)


_ORDER: List[LifecycleState] = list(LifecycleState)

# The only backward move: a stopped container brought back up.
_RESTARTS = {(LifecycleState.STOPPED, LifecycleState.RUNNING)}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ContainerHandle(BaseModel):
    """
    The orchestrator's record of a container: engine id, name and state.
    """

    name: str
    image: str
    id: Optional[str] = None
    state: LifecycleState = LifecycleState.ABSENT
    updated_at: str = Field(default_factory=_utcnow)

    def can_transition(self, target: LifecycleState) -> bool:
        if (self.state, target) in _RESTARTS:
            return True
        return target.rank > self.state.rank

    def transition(self, target: LifecycleState) -> "ContainerHandle":
        """
        Moves the handle to ``target``.

        :raises InvalidTransition: When the move goes backwards.
        """
        if not self.can_transition(target):
            raise InvalidTransition(
                f"{self.name}: cannot move from {self.state.value} to {target.value}"
            )
        self.state = target
        self.updated_at = _utcnow()
        return self
