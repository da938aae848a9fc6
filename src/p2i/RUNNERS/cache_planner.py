"""
Layer cache key planning.

Each instruction of a Dockerfile gets a key derived from its parent layer's
key, its own text (build arguments substituted) and, for COPY/ADD from the
build context, a digest of the files it reads. Two builds with the same keys
reuse the same layers; a changed key invalidates that step and every later
step of the stage.
"""
import fnmatch
import hashlib
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..MODELS.dockerfile_ast import DockerfileAST, Instruction, ParsedStage
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..UTILS.log_config import get_logger
from ..errors import ResolutionError

logger = get_logger(__name__)


def _sha256(*parts: str) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return "sha256:" + digest.hexdigest()


@dataclass(frozen=True)
class PlannedStep:
    """One instruction of the build with its cache key."""
    stage: str
    index: int
    instruction: str
    key: str
    line: int = 0


@dataclass
class BuildPlan:
    """Ordered cache keys for every instruction of a Dockerfile."""
    steps: List[PlannedStep] = field(default_factory=list)

    def for_stage(self, stage: str) -> List[PlannedStep]:
        return [s for s in self.steps if s.stage == stage]

    def stage_key(self, stage: str) -> Optional[str]:
        """Key of the last layer of a stage."""
        steps = self.for_stage(stage)
        return steps[-1].key if steps else None

    def invalidated(self, previous: "BuildPlan") -> List[PlannedStep]:
        """
        Steps of this plan whose key differs from the step at the same
        position in ``previous``.
        """
        old = {(s.stage, s.index): s.key for s in previous.steps}
        return [s for s in self.steps if old.get((s.stage, s.index)) != s.key]

    def to_dict(self) -> Dict:
        return {"steps": [asdict(s) for s in self.steps]}

    @classmethod
    def from_dict(cls, data: Dict) -> "BuildPlan":
        return cls(steps=[PlannedStep(**s) for s in data.get("steps", [])])


class BuildContext:
    """
    Files available to COPY/ADD, filtered by ``.dockerignore``.
    """
    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.ignore_patterns = self._load_ignore()

    def _load_ignore(self) -> List[str]:
        path = self.root / ".dockerignore"
        if not path.exists():
            return []
        patterns = []
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            negate = line.startswith("!")
            pattern = line[1:] if negate else line
            pattern = pattern.strip().lstrip("/").rstrip("/")
            if pattern.startswith("./"):
                pattern = pattern[2:]
            patterns.append(("!" if negate else "") + pattern)
        return patterns

    def is_ignored(self, relpath: str) -> bool:
        """Later patterns win; ``!pattern`` re-includes."""
        ignored = False
        for pattern in self.ignore_patterns:
            negate = pattern.startswith("!")
            pattern = pattern[1:] if negate else pattern
            if self._matches(relpath, pattern):
                ignored = not negate
        return ignored

    @staticmethod
    def _matches(relpath: str, pattern: str) -> bool:
        if pattern in ("", "."):
            return False
        pattern = pattern.replace("**/", "*").replace("/**", "/*")
        if fnmatch.fnmatchcase(relpath, pattern):
            return True
        # A matched directory excludes everything below it
        parts = relpath.split("/")
        return any(
            fnmatch.fnmatchcase("/".join(parts[:i]), pattern) for i in range(1, len(parts))
        )

    def digest(self, sources: Iterable[str]) -> str:
        """
        Digest of the named sources (files, directories or globs).

        :raises ResolutionError: If a source matches nothing in the context.
        """
        entries = []
        for source in sources:
            source = source.strip()
            if source.startswith("./"):
                source = source[2:]
            source = source.strip("/") or "."
            if source == ".":
                matches = [self.root]
            elif any(ch in source for ch in "*?["):
                matches = sorted(self.root.glob(source))
            else:
                matches = [self.root / source]
            matches = [m for m in matches if m.exists() and not self._ignored_path(m)]
            if not matches:
                raise ResolutionError(f"COPY source {source!r} not found in build context {self.root}")
            for match in matches:
                entries.extend(self._walk(match))
        return _sha256(*entries)

    def _ignored_path(self, path: Path) -> bool:
        if path == self.root:
            return False
        return self.is_ignored(path.relative_to(self.root).as_posix())

    def _walk(self, path: Path) -> List[str]:
        rel = path.relative_to(self.root).as_posix() if path != self.root else "."
        if path.is_file():
            return [f"{rel}:{self._file_digest(path)}:{os.access(path, os.X_OK)}"]
        entries = [f"{rel}/"]
        for child in sorted(path.iterdir()):
            if self._ignored_path(child):
                continue
            entries.extend(self._walk(child))
        return entries

    @staticmethod
    def _file_digest(path: Path) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
        return digest.hexdigest()


class LayerPlanner:
    """
    Computes the cache key of every instruction in a parsed Dockerfile.
    """
    def __init__(self, ast: DockerfileAST, context_dir: str, build_args: Optional[Dict[str, str]] = None):
        """
        :param ast: Parsed Dockerfile.
        :param context_dir: Build context root.
        :param build_args: Values overriding ARG defaults.
        """
        self.ast = ast
        self.context = BuildContext(context_dir)
        self.build_args = dict(build_args or {})

    def plan(self) -> BuildPlan:
        """
        Builds the plan, stage by stage.

        :raises ResolutionError: If a COPY source is missing or a stage
            refers to a stage that is not defined before it.
        """
        plan = BuildPlan()
        stage_keys: Dict[str, str] = {}
        global_scope = {
            name: self.build_args.get(name, default or "")
            for name, default in self.ast.global_args.items()
        }

        for stage in self.ast.stages:
            # Global ARGs are only visible inside a stage that re-declares them
            scope: Dict[str, str] = {}
            base = EnvironmentInterpolator.interpolate(stage.base, global_scope, strict=False)
            if base in stage_keys:
                parent = stage_keys[base]
            else:
                parent = _sha256("image", base, *stage.from_instruction.flags)
            plan.steps.append(PlannedStep(stage.ref, 0, stage.from_instruction.raw, parent,
                                          stage.from_instruction.line))

            for position, inst in enumerate(stage.instructions, start=1):
                if inst.instruction == "ARG":
                    self._declare(inst, scope, global_scope)
                text = EnvironmentInterpolator.interpolate(inst.raw, scope, strict=False)
                if inst.instruction == "RUN":
                    # Declared ARGs reach RUN commands as environment variables
                    content = _sha256("args", *sorted(f"{k}={v}" for k, v in scope.items()))
                else:
                    content = self._content_digest(inst, stage, stage_keys, scope)
                parent = _sha256(parent, text, content)
                plan.steps.append(PlannedStep(stage.ref, position, inst.raw, parent, inst.line))

            stage_keys[stage.ref] = parent
            stage_keys[str(stage.index)] = parent

        logger.debug("Planned %d steps across %d stages", len(plan.steps), len(self.ast.stages))
        return plan

    def _declare(self, inst: Instruction, scope: Dict[str, str], global_scope: Dict[str, str]) -> None:
        for arg in inst.arguments:
            name, sep, default = arg.partition("=")
            if name in self.build_args:
                scope[name] = self.build_args[name]
            elif sep:
                scope[name] = default
            else:
                scope[name] = global_scope.get(name, scope.get(name, ""))

    def _content_digest(self, inst: Instruction, stage: ParsedStage,
                        stage_keys: Dict[str, str], scope: Dict[str, str]) -> str:
        if inst.instruction not in ("COPY", "ADD"):
            return ""
        source_stage = inst.flag("from")
        if source_stage is not None:
            if source_stage in stage_keys:
                return stage_keys[source_stage]
            if self.ast.stage(source_stage) is not None:
                raise ResolutionError(
                    f"Stage {stage.ref} copies from {source_stage} before it is built"
                )
            # An external image
            return _sha256("image", source_stage)
        sources = self._sources(inst, scope)
        remote = [s for s in sources if "://" in s]
        local = [s for s in sources if "://" not in s]
        return _sha256(self.context.digest(local) if local else "", *remote)

    @staticmethod
    def _sources(inst: Instruction, scope: Dict[str, str]) -> List[str]:
        if len(inst.arguments) == 1:
            parts = inst.arguments[0].split()
        else:
            parts = list(inst.arguments)
        parts = [EnvironmentInterpolator.interpolate(p, scope, strict=False) for p in parts]
        # The last item is the destination
        return parts[:-1]
