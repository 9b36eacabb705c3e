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
Persistence of the last known container handle per service.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..errors import StateError
from ..MODELS.container_handle import ContainerHandle

logger = logging.getLogger(__name__)


class StateTracker:
    """
    Stores one JSON record per service name.

    Layout:
        state_dir/
            <service>.json
    """

    def __init__(self, state_dir: str = ".shipctl/state"):
        """
        Initialize the state tracker.

        Args:
            state_dir: Directory holding the records. Created on first write.
        """
        self.state_dir = Path(state_dir)

    def _path(self, name: str) -> Path:
        return self.state_dir / f"{name}.json"

    def load(self, name: str) -> Optional[ContainerHandle]:
        """
        Load the record for a service.

        Args:
            name: Service name.

        Returns:
            The stored handle, or None if the service is not tracked.

        Raises:
            StateError: If the record exists but cannot be parsed.
        """
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return ContainerHandle.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            raise StateError(f"Corrupt state record {path}: {e}") from e

    def save(self, handle: ContainerHandle) -> None:
        """
        Atomically write the record for ``handle.name``.

        The file is written beside its destination and renamed into place,
        so readers see either the old or the new record.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(handle.name)
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=f".{handle.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(handle.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StateError(f"Failed to write state record {path}: {e}") from e
        logger.debug("[%s] State saved: %s", handle.name, handle.state.value)

    def delete(self, name: str) -> bool:
        """
        Remove the record for a service.

        Returns:
            True if a record was removed.
        """
        path = self._path(name)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("[%s] State record removed", name)
        return True

    def list(self) -> List[ContainerHandle]:
        """List every tracked handle, sorted by service name."""
        if not self.state_dir.exists():
            return []
        handles = []
        for path in sorted(self.state_dir.glob("*.json")):
            handle = self.load(path.stem)
            if handle is not None:
                handles.append(handle)
        return handles
