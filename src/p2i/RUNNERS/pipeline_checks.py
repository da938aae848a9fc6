"""
Static checks that a Dockerfile keeps the two-stage pipeline guarantees:
cache-friendly layer ordering, a runtime stage without build tools, and the
declared runtime contract.
"""
import fnmatch
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set

from ..BUILDERS.runtime_assembler import is_toolchain
from ..MODELS.dockerfile_ast import DockerfileAST, Instruction, ParsedStage
from ..MODELS.runtime_contract import LivenessProbe
from ..UTILS.string_interpolation import EnvironmentInterpolator

MANIFEST_PATTERNS = [
    "pyproject.toml",
    "setup.cfg",
    "setup.py",
    "README*",
    "*.lock",
    "requirements*.txt",
    "Pipfile",
    "constraints*.txt",
]
LOCK_PATTERNS = ["*.lock", "requirements*.txt", "constraints*.txt"]

_INSTALL_COMMANDS = ("apt-get install", "apt install", "apk add")
_DURATION = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Violation:
    """A broken rule, with the line of the offending instruction."""
    rule: str
    severity: Severity
    message: str
    line: int = 0

    def __str__(self) -> str:
        where = f"line {self.line}: " if self.line else ""
        return f"{self.severity.value}: {where}{self.message} [{self.rule}]"


def parse_duration(value: str) -> Optional[float]:
    """'1m30s' -> 90.0; None when unparseable."""
    parts = _DURATION.findall(value or "")
    if not parts or "".join(n + u for n, u in parts) != value:
        return None
    return sum(float(n) * _UNITS[u] for n, u in parts)


def installed_packages(inst: Instruction) -> List[str]:
    """Packages named by apt-get/apk install commands in a RUN instruction."""
    packages = []
    for segment in re.split(r'&&|;|\|\|', inst.text):
        segment = segment.strip()
        for command in _INSTALL_COMMANDS:
            if command in segment:
                rest = segment.split(command, 1)[1]
                packages.extend(t for t in rest.split() if not t.startswith("-") and t != "\\")
    return packages


def _basename(source: str) -> str:
    return source.rstrip("/").rsplit("/", 1)[-1]


def _matches_any(source: str, patterns: List[str]) -> bool:
    name = _basename(source)
    return any(fnmatch.fnmatch(name, p) for p in patterns)


def _copy_sources(inst: Instruction) -> List[str]:
    parts = inst.arguments[0].split() if len(inst.arguments) == 1 else list(inst.arguments)
    return parts[:-1]


def _context_copies(stage: ParsedStage) -> List[Instruction]:
    return [i for i in stage.find("COPY") + stage.find("ADD") if i.flag("from") is None]


def _is_dependency_install(inst: Instruction) -> bool:
    text = inst.text
    if "poetry install" in text:
        return "--no-root" in text
    if "uv sync" in text:
        return "--no-install-project" in text
    return bool(re.search(r'pip3? install .*(-r|--requirement)\s', text))


class PipelineChecker:
    """
    Checks a parsed Dockerfile against the pipeline invariants.
    """
    def __init__(self, expected_ports: Optional[List[int]] = None, probe: Optional[LivenessProbe] = None):
        """
        :param expected_ports: Exact set of ports the final stage must expose.
        :param probe: Liveness probe policy the HEALTHCHECK must match.
        """
        self.expected_ports = expected_ports
        self.probe = probe

    def check(self, ast: DockerfileAST) -> List[Violation]:
        """
        Runs every rule.

        :return: Violations ordered by line.
        """
        if not ast.stages:
            return [Violation("stages", Severity.ERROR, "Dockerfile has no FROM instruction")]

        final = ast.final_stage
        builders = self._builder_stages(ast)
        violations: List[Violation] = []
        violations += self._check_base_args(ast)
        for stage in builders:
            violations += self._check_layer_order(stage)
        violations += self._check_clean_base(ast, final)
        violations += self._check_runtime_packages(ast, final, builders)
        for stage in ast.stages:
            violations += self._check_caches(stage, final)
        violations += self._check_vcs(final)
        violations += self._check_ports(final)
        violations += self._check_healthcheck(final)
        violations += self._check_entrypoint(final)
        return sorted(violations, key=lambda v: v.line)

    def _builder_stages(self, ast: DockerfileAST) -> List[ParsedStage]:
        """Stages the final stage copies its environment from; the final stage itself when it builds alone."""
        final = ast.final_stage
        refs = {i.flag("from") for i in final.find("COPY")} - {None}
        stages = [s for s in ast.stages if s is not final and (s.name in refs or str(s.index) in refs)]
        return stages or [s for s in ast.stages if s is not final] or [final]

    def _check_base_args(self, ast: DockerfileAST) -> List[Violation]:
        violations = []
        for stage in ast.stages:
            for name in EnvironmentInterpolator.variables(stage.base):
                if name not in ast.global_args:
                    violations.append(Violation(
                        "base-arg-declared", Severity.ERROR,
                        f"FROM uses ${name} but no ARG {name} precedes the first FROM",
                        stage.from_instruction.line,
                    ))
        return violations

    def _check_layer_order(self, stage: ParsedStage) -> List[Violation]:
        violations = []
        lock_line = None
        source_copy: Optional[Instruction] = None
        for inst in stage.instructions:
            if inst.instruction in ("COPY", "ADD") and inst.flag("from") is None:
                sources = _copy_sources(inst)
                if lock_line is None and any(_matches_any(s, LOCK_PATTERNS) for s in sources):
                    lock_line = inst.line
                if source_copy is None and any(not _matches_any(s, MANIFEST_PATTERNS) for s in sources):
                    source_copy = inst
            elif inst.instruction == "RUN" and "poetry install" in inst.text and source_copy is None \
                    and "--no-root" not in inst.text:
                violations.append(Violation(
                    "dependency-install-no-root", Severity.ERROR,
                    "The first poetry install must use --no-root so it does not need the source",
                    inst.line,
                ))
            elif inst.instruction == "RUN" and _is_dependency_install(inst):
                if source_copy is not None:
                    violations.append(Violation(
                        "manifest-before-source", Severity.ERROR,
                        f"Dependencies are installed after the source is copied (line {source_copy.line}); "
                        "every source change would re-run the install",
                        inst.line,
                    ))
                elif lock_line is None:
                    violations.append(Violation(
                        "manifest-before-source", Severity.ERROR,
                        "Dependencies are installed without copying the lock file first",
                        inst.line,
                    ))
        return violations

    def _toolchain_stages(self, ast: DockerfileAST) -> Set[str]:
        tainted: Set[str] = set()
        for stage in ast.stages:
            base = ast.stage(stage.base)
            if base is not None and base.ref in tainted:
                tainted.add(stage.ref)
                continue
            for inst in stage.find("RUN"):
                if any(is_toolchain(p) for p in installed_packages(inst)) or "pip install" in inst.text \
                        or "poetry install" in inst.text:
                    tainted.add(stage.ref)
                    break
        return tainted

    def _check_clean_base(self, ast: DockerfileAST, final: ParsedStage) -> List[Violation]:
        base = ast.stage(final.base)
        if base is not None and base.ref in self._toolchain_stages(ast):
            return [Violation(
                "runtime-clean-base", Severity.ERROR,
                f"The final stage derives from {base.ref}, which holds build tools or caches",
                final.from_instruction.line,
            )]
        return []

    def _check_runtime_packages(self, ast: DockerfileAST, final: ParsedStage,
                                builders: List[ParsedStage]) -> List[Violation]:
        build_headers = set()
        for stage in builders:
            for inst in stage.find("RUN"):
                build_headers.update(p for p in installed_packages(inst) if p.endswith("-dev"))

        violations = []
        for inst in final.find("RUN"):
            for package in installed_packages(inst):
                if is_toolchain(package):
                    violations.append(Violation(
                        "runtime-no-toolchain", Severity.ERROR,
                        f"Runtime stage installs build toolchain package {package}", inst.line,
                    ))
                elif package in build_headers:
                    violations.append(Violation(
                        "runtime-no-toolchain", Severity.WARNING,
                        f"Runtime stage installs build-time header package {package}", inst.line,
                    ))
        return violations

    def _check_caches(self, stage: ParsedStage, final: ParsedStage) -> List[Violation]:
        violations = []
        for inst in stage.find("RUN"):
            text = inst.text
            mounts = [m for m in inst.mounts() if m.get("type") == "cache"]
            if installed_packages(inst) and any(c in text for c in ("apt-get", "apt ")):
                if "rm -rf /var/lib/apt/lists" not in text:
                    violations.append(Violation(
                        "apt-lists-removed",
                        Severity.ERROR if stage is final else Severity.WARNING,
                        "apt package lists are left in the layer", inst.line,
                    ))
                for mount in mounts:
                    target = mount.get("target", "")
                    if target.startswith(("/var/cache/apt", "/var/lib/apt")) and mount.get("sharing") != "locked":
                        violations.append(Violation(
                            "apt-cache-locked", Severity.WARNING,
                            f"apt cache {target} should use sharing=locked", inst.line,
                        ))
            if ("pip install" in text or "poetry install" in text) and not mounts \
                    and "--no-cache-dir" not in text:
                violations.append(Violation(
                    "package-cache-mounted", Severity.WARNING,
                    "Package installs should use a cache mount (or --no-cache-dir) "
                    "so no cache ends up in the layer", inst.line,
                ))
        return violations

    def _check_vcs(self, final: ParsedStage) -> List[Violation]:
        violations = []
        for inst in _context_copies(final):
            for source in _copy_sources(inst):
                cleaned = source.strip().rstrip("/")
                if cleaned in (".", "./") or ".git" in cleaned.split("/"):
                    violations.append(Violation(
                        "no-vcs-metadata", Severity.ERROR,
                        f"Runtime stage copies {source!r}, which can carry source-control metadata",
                        inst.line,
                    ))
        return violations

    def _check_ports(self, final: ParsedStage) -> List[Violation]:
        if self.expected_ports is None:
            return []
        declared = set()
        line = final.from_instruction.line
        for inst in final.find("EXPOSE"):
            line = inst.line
            for item in inst.arguments:
                port, _, protocol = item.partition("/")
                if port.isdigit() and protocol in ("", "tcp"):
                    declared.add(int(port))
        expected = set(self.expected_ports)
        if declared != expected:
            return [Violation(
                "exposed-ports", Severity.ERROR,
                f"Exposed TCP ports {sorted(declared)} differ from {sorted(expected)}", line,
            )]
        return []

    def _check_healthcheck(self, final: ParsedStage) -> List[Violation]:
        checks = final.find("HEALTHCHECK")
        if not checks or checks[-1].arguments[:1] == ["NONE"]:
            return [Violation("healthcheck-policy", Severity.ERROR,
                              "Runtime stage declares no liveness probe", final.from_instruction.line)]
        if self.probe is None:
            return []

        inst = checks[-1]
        violations = []
        expected = {
            "interval": self.probe.interval,
            "timeout": self.probe.timeout,
            "start-period": self.probe.start_period,
            "retries": float(self.probe.retries),
        }
        # The builder's defaults apply to omitted flags
        defaults = {"interval": 30.0, "timeout": 30.0, "start-period": 0.0, "retries": 3.0}
        for name, want in expected.items():
            raw = inst.flag(name)
            if raw is None:
                have = defaults[name]
            elif name == "retries":
                have = float(raw) if raw.isdigit() else None
            else:
                have = parse_duration(raw)
            if have != want:
                violations.append(Violation(
                    "healthcheck-policy", Severity.ERROR,
                    f"HEALTHCHECK --{name} is {raw or 'unset'}, expected {want:g}", inst.line,
                ))
        if self.probe.url not in " ".join(inst.arguments[1:]):
            violations.append(Violation(
                "healthcheck-policy", Severity.ERROR,
                f"HEALTHCHECK does not probe {self.probe.url}", inst.line,
            ))
        return violations

    def _check_entrypoint(self, final: ParsedStage) -> List[Violation]:
        violations = []
        entrypoints = final.find("ENTRYPOINT")
        if not entrypoints:
            violations.append(Violation("entrypoint-exec-form", Severity.ERROR,
                                        "Runtime stage has no ENTRYPOINT", final.from_instruction.line))
        elif not entrypoints[-1].raw.split(None, 1)[-1].startswith("["):
            violations.append(Violation(
                "entrypoint-exec-form", Severity.ERROR,
                "ENTRYPOINT must use the exec (JSON) form so signals reach the start script",
                entrypoints[-1].line,
            ))
        for inst in final.find("CMD"):
            violations.append(Violation(
                "entrypoint-exec-form", Severity.WARNING,
                "Runtime stage sets default CMD arguments for the entrypoint", inst.line,
            ))
        return violations
