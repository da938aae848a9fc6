"""
Models for what the runtime image promises to the outside world: ports,
liveness probe, provenance labels and the entrypoint contract.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, model_validator


class ExposedPorts(BaseModel):
    """
    The three TCP ports the server image declares.
    """
    client: int = Field(8008, ge=1, le=65535)
    federation: int = Field(8009, ge=1, le=65535)
    legacy_tls: int = Field(8448, ge=1, le=65535)

    @model_validator(mode="after")
    def _distinct(self):
        if len(set(self.as_list())) != 3:
            raise ValueError("client, federation and legacy_tls ports must be distinct")
        return self

    def as_list(self) -> List[int]:
        return [self.client, self.federation, self.legacy_tls]


class LivenessProbe(BaseModel):
    """
    A periodic HTTP health request. Durations are in seconds.
    """
    url: str = "http://localhost:8008/health"
    interval: float = Field(15.0, gt=0)
    timeout: float = Field(5.0, gt=0)
    start_period: float = Field(5.0, ge=0)
    retries: int = Field(3, ge=1)

    def command(self) -> str:
        """Shell command run inside the container; non-zero exit is a failed probe."""
        return f"curl -fSs {self.url} || exit 1"


class ImageProvenance(BaseModel):
    """
    Descriptive metadata attached to the image as OCI labels.
    """
    url: Optional[str] = None
    documentation: Optional[str] = None
    source: Optional[str] = None
    licenses: Optional[str] = None

    def labels(self) -> Dict[str, str]:
        return {
            f"org.opencontainers.image.{key}": value
            for key, value in self.model_dump().items()
            if value
        }


class EntrypointContract(BaseModel):
    """
    What the image guarantees to the external startup script.
    """
    start_script: str = "docker/start.py"
    conf_dir: str = "docker/conf"
    script_path: str = "/start.py"
    conf_path: str = "/conf"
    # Lets the start script drop privileges before exec'ing the server
    privilege_tool: str = "gosu"
