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
Unit tests for the state tracker.
"""
import os
import pytest
from shipctl.errors import StateError
from shipctl.MANAGERS.state_tracker import StateTracker
from shipctl.MODELS.container_handle import ContainerHandle, LifecycleState


class TestStateTracker:
    """Tests for StateTracker."""

    def test_load_untracked(self, tmp_path):
        """Unknown services have no record."""
        tracker = StateTracker(str(tmp_path / "state"))
        assert tracker.load("web") is None
        assert tracker.list() == []

    def test_save_and_load(self, tmp_path):
        """A saved handle is read back unchanged."""
        tracker = StateTracker(str(tmp_path / "state"))
        handle = ContainerHandle(name="web", image="myapp:v1", id="abc123", state=LifecycleState.HEALTHY)
        tracker.save(handle)
        loaded = tracker.load("web")
        assert loaded == handle

    def test_save_overwrites_without_leftovers(self, tmp_path):
        """Atomic writes leave only the record behind."""
        tracker = StateTracker(str(tmp_path / "state"))
        handle = ContainerHandle(name="web", image="myapp:v1", state=LifecycleState.RUNNING)
        tracker.save(handle)
        handle.transition(LifecycleState.HEALTHY)
        tracker.save(handle)
        assert os.listdir(tracker.state_dir) == ["web.json"]
        assert tracker.load("web").state == LifecycleState.HEALTHY

    def test_corrupt_record_raises(self, tmp_path):
        """Unparseable records are reported, not ignored."""
        tracker = StateTracker(str(tmp_path / "state"))
        tracker.state_dir.mkdir(parents=True)
        (tracker.state_dir / "web.json").write_text("{not json")
        with pytest.raises(StateError):
            tracker.load("web")

    def test_delete(self, tmp_path):
        """Deleting removes the record once."""
        tracker = StateTracker(str(tmp_path / "state"))
        tracker.save(ContainerHandle(name="web", image="myapp:v1"))
        assert tracker.delete("web") is True
        assert tracker.delete("web") is False
        assert tracker.load("web") is None

    def test_list_sorted(self, tmp_path):
        """Listing returns every record by name."""
        tracker = StateTracker(str(tmp_path / "state"))
        tracker.save(ContainerHandle(name="worker", image="w:v1"))
        tracker.save(ContainerHandle(name="api", image="a:v1"))
        assert [h.name for h in tracker.list()] == ["api", "worker"]
