"""
Steps that hand the runtime image over to the external start script.
"""
from typing import List

from ..MODELS.build_pipeline import (
    CopyStep,
    EntrypointStep,
    ExposeStep,
    HealthcheckStep,
    Step,
)
from ..MODELS.server_image import ServerImageConfig


class EntrypointInstaller:
    """
    Copies the start script and configuration directory to fixed paths,
    declares the network surface and the liveness probe, and makes the
    script the unconditional entrypoint. No default CMD is set.
    """
    def __init__(self, config: ServerImageConfig):
        self.config = config

    def steps(self) -> List[Step]:
        contract = self.config.entrypoint
        return [
            CopyStep(sources=[f"./{contract.start_script}"], destination=contract.script_path),
            CopyStep(sources=[f"./{contract.conf_dir}"], destination=contract.conf_path),
            ExposeStep(ports=self.config.ports.as_list()),
            EntrypointStep(command=[contract.script_path]),
            HealthcheckStep(probe=self.config.probe),
        ]
