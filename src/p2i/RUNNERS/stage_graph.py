"""
Dependency graph between build stages, to determine build order and which
stages can run concurrently.
"""
from typing import Dict, List, Set, Union

from ..MODELS.build_pipeline import BuildPipeline
from ..MODELS.dockerfile_ast import DockerfileAST
from ..errors import PipelineError


class StageGraph:
    """
    Stages and the stages they read from (their base and their COPY --from
    sources). A stage may only start once all of those have completed.
    """
    def __init__(self, source: Union[DockerfileAST, BuildPipeline]):
        """
        :param source: A parsed Dockerfile or a pipeline model.
        """
        self._deps: Dict[str, Set[str]] = {}
        self._order: List[str] = []
        if isinstance(source, BuildPipeline):
            self._from_pipeline(source)
        else:
            self._from_ast(source)

    def _from_pipeline(self, pipeline: BuildPipeline):
        names = set(pipeline.stage_names())
        for index, stage in enumerate(pipeline.stages):
            ref = stage.name or str(index)
            deps = set(stage.copies_from())
            if stage.base in names:
                deps.add(stage.base)
            self._add(ref, deps)

    def _from_ast(self, ast: DockerfileAST):
        refs = {s.name for s in ast.stages if s.name}
        refs.update(str(s.index) for s in ast.stages)
        for stage in ast.stages:
            deps = set()
            if stage.base in refs:
                deps.add(self._canonical(ast, stage.base))
            for inst in stage.find("COPY") + stage.find("ADD"):
                source = inst.flag("from")
                if source is not None and source in refs:
                    deps.add(self._canonical(ast, source))
            self._add(stage.ref, deps)

    @staticmethod
    def _canonical(ast: DockerfileAST, ref: str) -> str:
        return ast.stage(ref).ref

    def _add(self, ref: str, deps: Set[str]):
        self._deps[ref] = deps
        self._order.append(ref)

    @property
    def stages(self) -> List[str]:
        return list(self._order)

    @property
    def final(self) -> str:
        if not self._order:
            raise PipelineError("No stages defined")
        return self._order[-1]

    def dependencies(self, ref: str) -> Set[str]:
        """Stages ``ref`` reads from directly."""
        return set(self._deps[ref])

    def resolve_order(self) -> List[str]:
        """
        Determines an order to build stages using topological sort.

        :return: Stage names, each after the stages it depends on.
        :raises PipelineError: If a cycle is detected.
        """
        ordered = []
        visited = set()
        processing = set()

        def visit(name):
            if name in processing:
                raise PipelineError(f"Circular stage dependency involving {name}")
            if name not in visited:
                processing.add(name)
                for dep in sorted(self._deps.get(name, ())):
                    visit(dep)
                processing.remove(name)
                visited.add(name)
                ordered.append(name)

        for name in self._order:
            visit(name)

        return ordered

    def parallel_groups(self) -> List[List[str]]:
        """
        Groups stages by depth: every stage of a group only depends on stages
        of earlier groups, so a group's stages may be built concurrently.
        """
        depth: Dict[str, int] = {}
        for name in self.resolve_order():
            deps = self._deps[name]
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)
        groups: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self._order:
            groups[depth[name]].append(name)
        return groups

    def required_by(self, ref: str) -> Set[str]:
        """All stages ``ref`` transitively depends on."""
        seen: Set[str] = set()
        stack = list(self._deps[ref])
        while stack:
            name = stack.pop()
            if name not in seen:
                seen.add(name)
                stack.extend(self._deps[name])
        return seen

    def unreachable(self) -> List[str]:
        """Stages the final stage does not need; BuildKit skips them."""
        needed = self.required_by(self.final) | {self.final}
        return [name for name in self._order if name not in needed]
