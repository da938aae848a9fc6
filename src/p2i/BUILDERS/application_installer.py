"""
Build stage part two: the application's own source, installed into the
environment the dependency installer already populated.
"""
from typing import List

from ..MODELS.build_pipeline import CopyStep, RunStep, Stage, Step
from ..MODELS.server_image import ServerImageConfig
from .dependency_installer import poetry_caches, poetry_install


class ApplicationInstaller:
    """
    Copies the source tree and registers the application as an installed
    package. No new resolution happens: the lock is already satisfied.
    """
    def __init__(self, config: ServerImageConfig):
        self.config = config

    def steps(self) -> List[Step]:
        root = self.config.app_root
        steps: List[Step] = []
        for index, source in enumerate(self.config.source_dirs):
            name = source.strip("/")
            steps.append(CopyStep(
                sources=[name],
                destination=f"{root}/{name}/",
                comment=f"Copy over the {self.config.name} source code." if index == 0 else None,
            ))
        steps.append(RunStep(
            command=poetry_install(self.config.poetry.install_extras, no_root=False),
            mounts=poetry_caches(self.config),
            comment=f"Install the {self.config.name} package itself, by omitting --no-root",
        ))
        return steps

    def extend(self, stage: Stage) -> Stage:
        """Returns a copy of ``stage`` with the install steps appended."""
        return stage.model_copy(update={"steps": list(stage.steps) + self.steps()})
