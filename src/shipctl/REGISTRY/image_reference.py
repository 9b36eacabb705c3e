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
Image reference parsing and re-targeting.
Parses references like 'myapp:v1' or 'registry.example.com:5000/team/myapp:v1'
and derives the aliases used for tagging and pushing.
"""

import re
from typing import Optional
from dataclasses import dataclass, replace


_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_HOST_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?(?::[0-9]+)?$")
_COMPONENT_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - myapp -> docker.io/library/myapp:latest
        - myuser/myapp:v1 -> docker.io/myuser/myapp:v1
        - localhost:5000/myapp:v1 -> localhost:5000/myapp:v1
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'myapp:v1', 'myuser/myapp')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")
        if any(ch.isspace() for ch in reference):
            raise ValueError(f"Image reference must not contain whitespace: {reference!r}")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)

        # A colon followed by a path segment belongs to a registry port.
        tag = None
        last_colon = reference.rfind(":")
        if last_colon != -1 and "/" not in reference[last_colon + 1:]:
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]
            if not _TAG_PATTERN.match(tag):
                raise ValueError(f"Invalid tag {tag!r}")

        if not reference:
            raise ValueError("Image reference has no repository")

        parts = reference.split("/")
        first = parts[0]
        looks_like_host = "." in first or ":" in first or first == "localhost"
        if len(parts) > 1 and looks_like_host and _HOST_PATTERN.match(first):
            registry = first
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference if len(parts) > 1 else f"library/{reference}"

        if repository != repository.lower():
            raise ValueError(f"Repository name must be lowercase: {repository!r}")
        for component in repository.split("/"):
            if not _COMPONENT_PATTERN.match(component):
                raise ValueError(f"Invalid repository name {repository!r}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    def with_tag(self, tag: str) -> "ImageReference":
        """Same repository under a different tag (any digest is dropped)."""
        return replace(self, tag=tag, digest=None)

    def in_registry(self, registry: str) -> "ImageReference":
        """
        Re-targets the reference at another registry.

        ``registry`` may carry a namespace, e.g. ``ghcr.io/acme``.
        """
        host, _, namespace = registry.strip("/").partition("/")
        name = self.repository
        if self.registry == self.DEFAULT_REGISTRY and name.startswith("library/"):
            name = name[len("library/"):]
        if namespace:
            name = f"{namespace}/{name.rsplit('/', 1)[-1]}"
        return replace(self, registry=host, repository=name)

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.digest:
            return f"{repo}@{self.digest}"
        if self.tag:
            return f"{repo}:{self.tag}"
        return repo

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
