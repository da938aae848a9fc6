"""
Selects the pinned interpreter image every stage derives from.
"""
import re
from typing import Optional

from ..MODELS.build_pipeline import BuildArgument, Stage
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.registry_client import RegistryClient
from ..UTILS.log_config import get_logger
from ..errors import ResolutionError

logger = get_logger(__name__)

_VERSION = re.compile(r'^\d+(\.\d+){0,2}([a-z]+\d*)?$')

BASE_STAGE = "base"


class BaseImageResolver:
    """
    Resolves the base image from a version build argument.
    """
    def __init__(self,
                 template: str = "docker.io/python:{version}-slim",
                 default_version: str = "3.9",
                 argument_name: str = "PYTHON_VERSION",
                 registry: Optional[RegistryClient] = None):
        """
        :param template: Image reference with a ``{version}`` placeholder.
        :param default_version: Version used when none is requested.
        :param argument_name: Name of the build argument carrying the version.
        :param registry: Client used by verify(); created on demand.
        """
        self.template = template
        self.default_version = default_version
        self.argument_name = argument_name
        self._registry = registry

    def argument(self) -> BuildArgument:
        """The version build argument with its documented default."""
        return BuildArgument(name=self.argument_name, default=self.default_version)

    def reference_template(self) -> str:
        """The base image as written in the Dockerfile, e.g. python:${PYTHON_VERSION}-slim."""
        return self.template.format(version="${" + self.argument_name + "}")

    def resolve(self, version: Optional[str] = None) -> ImageReference:
        """
        Substitutes the version into the template.

        :param version: Requested version; defaults to the argument default.
        :return: The concrete base image reference.
        :raises ResolutionError: If the version is malformed.
        """
        version = (version or self.default_version).strip()
        if not _VERSION.match(version):
            raise ResolutionError(f"Invalid {self.argument_name} {version!r}")
        try:
            return ImageReference.parse(self.template.format(version=version))
        except ValueError as e:
            raise ResolutionError(str(e)) from e

    def verify(self, version: Optional[str] = None) -> ImageReference:
        """
        Checks the registry publishes the resolved image.

        :raises ResolutionError: If no matching image is published.
        :raises TransientBuildError: If the registry cannot be reached.
        """
        ref = self.resolve(version)
        if self._registry is None:
            self._registry = RegistryClient()
        logger.info("Checking that %s is published", ref.full_name)
        if not self._registry.tag_exists(ref):
            raise ResolutionError(f"No published image {ref.full_name} for {self.argument_name}={version or self.default_version}")
        return ref

    def stage(self) -> Stage:
        """The root stage all others derive from."""
        return Stage(
            name=BASE_STAGE,
            base=self.reference_template(),
            description="Pinned interpreter runtime",
        )
