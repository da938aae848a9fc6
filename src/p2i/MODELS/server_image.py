"""
Models representing the server image to build and the inputs it is built from.
"""
from typing import List
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

from .runtime_contract import EntrypointContract, ExposedPorts, ImageProvenance, LivenessProbe

# Compilers and headers needed to build native extensions
DEFAULT_BUILD_PACKAGES = [
    "build-essential",
    "libffi-dev",
    "libjpeg-dev",
    "libpq-dev",
    "libssl-dev",
    "libwebp-dev",
    "libxml++2.6-dev",
    "libxslt1-dev",
    "openssl",
    "rustc",
    "zlib1g-dev",
]

# Shared libraries the compiled extensions link against at runtime
DEFAULT_RUNTIME_PACKAGES = [
    "libjpeg62-turbo",
    "libpq5",
    "libwebp6",
    "xmlsec1",
    "libjemalloc2",
    "openssl",
]


class PoetrySettings(BaseModel):
    """
    The pinned dependency manager and how it installs into the environment.
    """
    version: str = "1.1.12"
    home: str = "/opt/poetry"
    virtualenvs_in_project: bool = True
    dependency_extras: List[str] = ["all", "test"]
    install_extras: List[str] = ["all"]

    def environment(self) -> dict:
        flag = "true" if self.virtualenvs_in_project else "false"
        return {
            "POETRY_VIRTUALENVS_IN_PROJECT": flag,
            "POETRY_VIRTUALENVS_CREATE": "true",
            "POETRY_HOME": self.home,
        }


class ServerImageConfig(BaseModel):
    """
    Everything needed to lay out the two-stage build of a Python server.
    """
    name: str = "synapse"
    python_version: str = "3.9"
    # {version} is replaced with a reference to the version build argument
    base_image: str = "docker.io/python:{version}-slim"
    version_argument: str = "PYTHON_VERSION"

    app_root: str = "/synapse"
    manifest_files: List[str] = ["pyproject.toml", "poetry.lock", "README.rst"]
    source_dirs: List[str] = ["synapse"]

    poetry: PoetrySettings = Field(default_factory=PoetrySettings)
    build_packages: List[str] = Field(default_factory=lambda: list(DEFAULT_BUILD_PACKAGES))
    runtime_packages: List[str] = Field(default_factory=lambda: list(DEFAULT_RUNTIME_PACKAGES))

    ports: ExposedPorts = Field(default_factory=ExposedPorts)
    probe: LivenessProbe = Field(default_factory=LivenessProbe)
    provenance: ImageProvenance = Field(default_factory=lambda: ImageProvenance(
        url="https://matrix.org/docs/projects/server/synapse",
        documentation="https://github.com/matrix-org/synapse/blob/master/docker/README.md",
        source="https://github.com/matrix-org/synapse.git",
        licenses="Apache-2.0",
    ))
    entrypoint: EntrypointContract = Field(default_factory=EntrypointContract)

    @field_validator("base_image")
    @classmethod
    def _has_version_placeholder(cls, value: str) -> str:
        if "{version}" not in value:
            raise ValueError("base_image must contain a {version} placeholder")
        return value

    @field_validator("app_root")
    @classmethod
    def _absolute_root(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("app_root must be an absolute path")
        return value.rstrip("/") or "/"

    @field_validator("manifest_files", "source_dirs")
    @classmethod
    def _not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one entry is required")
        return value

    @model_validator(mode="after")
    def _probe_targets_client_port(self):
        client = self.ports.client
        if "url" not in self.probe.model_fields_set:
            self.probe.url = f"http://localhost:{client}/health"
            return self
        parsed = urlparse(self.probe.url)
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        if port != client:
            raise ValueError(f"probe.url {self.probe.url} does not target the client port {client}")
        return self

    @property
    def lock_file(self) -> str:
        for name in self.manifest_files:
            if name.endswith(".lock"):
                return name
        return self.manifest_files[0]
