"""
Models for the Dockerfile Abstract Syntax Tree.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a Dockerfile.

    ``flags`` holds the leading ``--name=value`` options (``--mount``,
    ``--from``, ``--interval``...), in order; a flag may repeat.
    """
    instruction: str
    arguments: List[str]
    flags: List[str] = []
    raw: str
    line: int = 0

    def flag(self, name: str) -> Optional[str]:
        """Value of the last ``--name`` flag, or None."""
        values = self.flag_values(name)
        return values[-1] if values else None

    def flag_values(self, name: str) -> List[str]:
        prefix = f"--{name}="
        return [f[len(prefix):] for f in self.flags if f.startswith(prefix)]

    def mounts(self) -> List[Dict[str, str]]:
        """
        Parses ``--mount`` flags into dictionaries,
        e.g. ``{"type": "cache", "target": "/root/.cache/pip"}``.
        """
        mounts = []
        for value in self.flag_values("mount"):
            options = {}
            for part in value.split(","):
                key, _, val = part.partition("=")
                options[key.strip()] = val.strip()
            mounts.append(options)
        return mounts

    @property
    def text(self) -> str:
        """Arguments joined back into a single string."""
        return " ".join(self.arguments)


class ParsedStage(BaseModel):
    """
    Instructions from one FROM up to the next.
    """
    index: int
    base: str
    name: Optional[str] = None
    from_instruction: Instruction
    instructions: List[Instruction] = []

    @property
    def ref(self) -> str:
        """Name used to refer to the stage: its alias, else its index."""
        return self.name or str(self.index)

    def find(self, instruction: str) -> List[Instruction]:
        return [i for i in self.instructions if i.instruction == instruction]


class DockerfileAST(BaseModel):
    """
    Represents the complete Abstract Syntax Tree of a Dockerfile.
    """
    instructions: List[Instruction] = []
    global_args: Dict[str, Optional[str]] = {}
    stages: List[ParsedStage] = []

    @property
    def final_stage(self) -> Optional[ParsedStage]:
        return self.stages[-1] if self.stages else None

    def stage(self, ref: str) -> Optional[ParsedStage]:
        for stage in self.stages:
            if stage.name == ref or str(stage.index) == ref:
                return stage
        return None
