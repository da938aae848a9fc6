"""
The runtime stage: a fresh base with runtime libraries only, plus the
isolated environment copied wholesale from the builder.
"""
from typing import List

from ..MODELS.build_pipeline import CopyStep, LabelStep, RunStep, Stage, Step
from ..MODELS.server_image import ServerImageConfig
from .dependency_installer import APT_CACHES, apt_install
from .entrypoint import EntrypointInstaller

# Packages that must never reach the shipped image
TOOLCHAIN_PACKAGES = {
    "build-essential",
    "gcc",
    "g++",
    "cpp",
    "make",
    "clang",
    "rustc",
    "cargo",
    "python3-dev",
    "libc6-dev",
}

PROBE_TOOL = "curl"


def is_toolchain(package: str) -> bool:
    name = package.split("=", 1)[0].strip()
    return name in TOOLCHAIN_PACKAGES or name.startswith(("gcc-", "g++-", "clang-"))


class RuntimeAssembler:
    """
    Builds the final stage from the clean base, never from the builder.
    """
    def __init__(self, config: ServerImageConfig):
        self.config = config
        self.entrypoint = EntrypointInstaller(config)

    def packages(self) -> List[str]:
        """Runtime allow-list plus the probe and privilege-dropping tools."""
        packages = [PROBE_TOOL, self.config.entrypoint.privilege_tool]
        for package in self.config.runtime_packages:
            if package not in packages:
                packages.append(package)
        return packages

    def rejected_packages(self) -> List[str]:
        """
        Runtime packages that are compilers, or headers only needed to build.
        """
        build_headers = {p for p in self.config.build_packages if p.endswith("-dev")}
        return [
            p for p in self.config.runtime_packages
            if is_toolchain(p) or p in build_headers
        ]

    def steps(self, builder: str) -> List[Step]:
        steps: List[Step] = []
        labels = self.config.provenance.labels()
        if labels:
            steps.append(LabelStep(labels=labels))
        steps.append(RunStep(command=apt_install(self.packages()), mounts=list(APT_CACHES)))
        root = self.config.app_root
        steps.append(CopyStep(sources=[f"{root}/"], destination=root, from_stage=builder))
        steps.extend(self.entrypoint.steps())
        return steps

    def stage(self, base: str, builder: str) -> Stage:
        """
        :param base: Clean stage to start from.
        :param builder: Stage holding the built environment.
        """
        return Stage(
            name=None,
            base=base,
            steps=self.steps(builder),
            description="runtime",
        )
