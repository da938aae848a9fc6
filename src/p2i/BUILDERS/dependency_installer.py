"""
Build stage part one: OS toolchain and locked third-party dependencies,
installed before any application source is copied in.
"""
from typing import List

from ..MODELS.build_pipeline import (
    CacheMount,
    CacheSharing,
    CopyStep,
    EnvStep,
    RunStep,
    Stage,
    Step,
    WorkdirStep,
)
from ..MODELS.server_image import ServerImageConfig

BUILDER_STAGE = "builder"

# apt refuses to run twice on the same lists, so concurrent builds must queue
APT_CACHES = [
    CacheMount(target="/var/cache/apt", sharing=CacheSharing.LOCKED),
    CacheMount(target="/var/lib/apt", sharing=CacheSharing.LOCKED),
]


def apt_install(packages: List[str]) -> str:
    """apt-get command that leaves no package lists in the layer."""
    lines = ["apt-get update && apt-get install -y"]
    lines.extend(f"    {package}" for package in packages)
    lines.append("    && rm -rf /var/lib/apt/lists/*")
    return " \\\n".join(lines)


def poetry_caches(config: ServerImageConfig) -> List[CacheMount]:
    home = config.poetry.home
    return [
        CacheMount(target=f"{home}/artifacts"),
        CacheMount(target=f"{home}/.cache/pypoetry/cache"),
    ]


def poetry_install(extras: List[str], no_root: bool) -> str:
    parts = ["poetry install --no-dev"]
    if no_root:
        parts.append("--no-root")
    parts.append("--no-interaction --no-ansi")
    if extras:
        parts.append(f'--extras "{" ".join(extras)}"')
    return " ".join(parts)


class DependencyInstaller:
    """
    Produces the steps that give the builder stage a toolchain and a fully
    resolved isolated environment, depending only on the manifest files.
    """
    def __init__(self, config: ServerImageConfig):
        self.config = config

    def steps(self) -> List[Step]:
        config = self.config
        root = config.app_root
        return [
            RunStep(
                command=f"pip install poetry=={config.poetry.version}",
                mounts=[CacheMount(target="/root/.cache/pip")],
                comment="The dependency manager stays out of the runtime image.",
            ),
            RunStep(
                command=apt_install(config.build_packages),
                mounts=list(APT_CACHES),
                comment="install the OS build deps",
            ),
            WorkdirStep(path=root),
            CopyStep(
                sources=list(config.manifest_files),
                destination=f"{root}/",
                comment="Copy just what we need to resolve dependencies",
            ),
            EnvStep(variables=config.poetry.environment()),
            RunStep(
                command=poetry_install(config.poetry.dependency_extras, no_root=True),
                mounts=poetry_caches(config),
                comment=(
                    "Install all dependencies before copying the source, so this layer\n"
                    "stays cached while only the source changes."
                ),
            ),
        ]

    def stage(self, base: str) -> Stage:
        """
        :param base: Name of the stage to derive from.
        """
        return Stage(
            name=BUILDER_STAGE,
            base=base,
            steps=self.steps(),
            description="builder",
        )
