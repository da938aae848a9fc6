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
Image reference parsing and handling.
Parses base image references like 'python:3.9-slim' or 'docker.io/python:3.10-slim'.
"""

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - python -> docker.io/library/python:latest
        - python:3.9-slim -> docker.io/library/python:3.9-slim
        - docker.io/python:3.10-slim -> docker.io/library/python:3.10-slim
        - ghcr.io/org/image@sha256:abc123... -> ghcr.io/org/image@sha256:abc123...
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
            reference: Image reference string (e.g., 'python:3.9-slim')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or still holds an
                unsubstituted build argument.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("Empty image reference")
        if "$" in reference:
            raise ValueError(f"Unresolved variable in image reference {reference!r}")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)

        tag = None
        last_colon = reference.rfind(":")
        # A colon followed by a slash belongs to a registry port (localhost:5000/image)
        if last_colon != -1 and "/" not in reference[last_colon + 1:]:
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]

        parts = reference.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference

        # Official images live under library/ on Docker Hub
        if registry == cls.DEFAULT_REGISTRY and "/" not in repository:
            repository = f"library/{repository}"

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    def with_tag(self, tag: str) -> "ImageReference":
        """Same repository, different tag, digest dropped."""
        return replace(self, tag=tag, digest=None)

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
        return f"{repo}:{self.tag}" if self.tag else repo

    @property
    def registry_url(self) -> str:
        """Get the registry URL for API calls."""
        if self.registry == self.DEFAULT_REGISTRY:
            return "https://registry-1.docker.io"
        if "://" in self.registry:
            return self.registry
        if self.registry.startswith("localhost"):
            return f"http://{self.registry}"
        return f"https://{self.registry}"

    @property
    def manifest_url(self) -> str:
        """URL of the manifest for this tag or digest."""
        return f"{self.registry_url}/v2/{self.repository}/manifests/{self.digest or self.tag}"

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
