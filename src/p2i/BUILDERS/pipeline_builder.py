"""
Builders for turning an image configuration into a validated build pipeline.
"""
from typing import Optional

from ..MODELS.build_pipeline import BuildPipeline
from ..MODELS.server_image import ServerImageConfig
from ..UTILS.log_config import get_logger
from ..errors import ConfigError
from .application_installer import ApplicationInstaller
from .base_image import BaseImageResolver
from .dependency_installer import DependencyInstaller
from .runtime_assembler import RuntimeAssembler

logger = get_logger(__name__)

HEADER = [
    "Dockerfile to build the {name} docker image.",
    "",
    "Uses BuildKit cache mounts, build with:",
    "",
    "   DOCKER_BUILDKIT=1 docker build -f docker/Dockerfile .",
    "",
    "The {argument} build argument selects the python version, e.g.",
    "",
    "   DOCKER_BUILDKIT=1 docker build -f docker/Dockerfile --build-arg {argument}={example} .",
]


class PipelineBuilder:
    """
    Lays out base -> builder -> runtime for a server image.
    """
    def __init__(self, config: ServerImageConfig, resolver: Optional[BaseImageResolver] = None):
        """
        Initializes the PipelineBuilder.

        :param config: The image configuration.
        :param resolver: Base image resolver; derived from the configuration if omitted.
        """
        self.config = config
        self.resolver = resolver or BaseImageResolver(
            template=config.base_image,
            default_version=config.python_version,
            argument_name=config.version_argument,
        )

    def build(self) -> BuildPipeline:
        """
        Creates the pipeline model.

        :return: The validated pipeline.
        :raises ConfigError: If the runtime allow-list holds build-only packages.
        """
        runtime = RuntimeAssembler(self.config)
        rejected = runtime.rejected_packages()
        if rejected:
            raise ConfigError(
                "Runtime packages must not include build toolchains or headers: "
                + ", ".join(rejected)
            )

        base = self.resolver.stage()
        builder = DependencyInstaller(self.config).stage(base.name)
        builder = ApplicationInstaller(self.config).extend(builder)
        final = runtime.stage(base.name, builder.name)

        header = [
            line.format(
                name=self.config.name,
                argument=self.resolver.argument_name,
                example="3.10",
            )
            for line in HEADER
        ]
        pipeline = BuildPipeline(
            arguments=[self.resolver.argument()],
            stages=[base, builder, final],
            header=header,
        )
        logger.debug("Built pipeline with stages %s", [s.name or "<final>" for s in pipeline.stages])
        return pipeline
