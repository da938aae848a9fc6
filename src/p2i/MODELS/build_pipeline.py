"""
Models describing a multi-stage image build: build arguments, cache mounts,
steps and the stages they form.
"""
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .runtime_contract import LivenessProbe
from ..errors import PipelineError


class CacheSharing(str, Enum):
    """
    How concurrent builds may use the same cache mount.
    """
    SHARED = "shared"
    LOCKED = "locked"
    PRIVATE = "private"


class CacheMount(BaseModel):
    """
    A persistent directory available while a RUN step executes, keyed by
    purpose. It is never part of the produced layer.
    """
    target: str
    sharing: CacheSharing = CacheSharing.SHARED
    id: Optional[str] = None

    def render(self) -> str:
        parts = ["type=cache", f"target={self.target}"]
        if self.id:
            parts.append(f"id={self.id}")
        if self.sharing != CacheSharing.SHARED:
            parts.append(f"sharing={self.sharing.value}")
        return "--mount=" + ",".join(parts)


class BuildArgument(BaseModel):
    """
    A named input substituted at build invocation time.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    default: Optional[str] = None


class RunStep(BaseModel):
    kind: Literal["run"] = "run"
    command: str
    mounts: List[CacheMount] = []
    comment: Optional[str] = None


class CopyStep(BaseModel):
    kind: Literal["copy"] = "copy"
    sources: List[str]
    destination: str
    from_stage: Optional[str] = None
    comment: Optional[str] = None


class EnvStep(BaseModel):
    kind: Literal["env"] = "env"
    variables: Dict[str, str]
    comment: Optional[str] = None


class WorkdirStep(BaseModel):
    kind: Literal["workdir"] = "workdir"
    path: str


class LabelStep(BaseModel):
    kind: Literal["label"] = "label"
    labels: Dict[str, str]


class ExposeStep(BaseModel):
    kind: Literal["expose"] = "expose"
    ports: List[int]
    protocol: str = "tcp"


class EntrypointStep(BaseModel):
    kind: Literal["entrypoint"] = "entrypoint"
    command: List[str]


class HealthcheckStep(BaseModel):
    kind: Literal["healthcheck"] = "healthcheck"
    probe: LivenessProbe


Step = Annotated[
    Union[
        RunStep,
        CopyStep,
        EnvStep,
        WorkdirStep,
        LabelStep,
        ExposeStep,
        EntrypointStep,
        HealthcheckStep,
    ],
    Field(discriminator="kind"),
]


class Stage(BaseModel):
    """
    A named checkpoint producing a filesystem snapshot. ``base`` is either an
    image reference or the name of an earlier stage.
    """
    name: Optional[str] = None
    base: str
    steps: List[Step] = []
    description: Optional[str] = None

    def copies_from(self) -> Set[str]:
        return {
            step.from_stage
            for step in self.steps
            if isinstance(step, CopyStep) and step.from_stage
        }


class BuildPipeline(BaseModel):
    """
    An ordered set of stages; the last one is the shipped image.
    """
    arguments: List[BuildArgument] = []
    stages: List[Stage]
    header: List[str] = []

    @model_validator(mode="after")
    def _check_references(self):
        if not self.stages:
            raise PipelineError("A pipeline needs at least one stage")
        seen: Set[str] = set()
        for stage in self.stages:
            if stage.name and stage.base == stage.name:
                raise PipelineError(f"Stage {stage.name} cannot derive from itself")
            for source in stage.copies_from():
                if source not in seen:
                    raise PipelineError(
                        f"Stage {stage.name or '<final>'} copies from {source}, "
                        "which is not an earlier stage"
                    )
            if stage.name:
                if stage.name in seen:
                    raise PipelineError(f"Duplicate stage name {stage.name}")
                seen.add(stage.name)
        return self

    @property
    def final_stage(self) -> Stage:
        return self.stages[-1]

    def stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages if stage.name]
