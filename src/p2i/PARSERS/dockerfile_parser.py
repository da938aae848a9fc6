"""
Parsers for Dockerfiles, extracting instructions, flags and build stages.
"""
import json
import re
import shlex
from typing import List, Optional, Tuple

from ..MODELS.dockerfile_ast import DockerfileAST, Instruction, ParsedStage

# Instructions that accept leading --name=value options
_FLAGGED = {"FROM", "RUN", "COPY", "ADD", "HEALTHCHECK"}

_INSTRUCTION = re.compile(r'^\s*([A-Za-z]+)(?:\s+(.*))?$', re.DOTALL)


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> DockerfileAST:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            DockerfileAST: Parsed instructions grouped into stages.
        """
        with open(dockerfile_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> DockerfileAST:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            DockerfileAST: Parsed instructions grouped into stages.
        """
        ast = DockerfileAST()
        current: Optional[ParsedStage] = None

        for line_no, logical in self._logical_lines(content):
            inst = self._parse_instruction(line_no, logical)
            if inst is None:
                continue
            ast.instructions.append(inst)

            if inst.instruction == "FROM":
                base, name = self._split_from(inst.arguments)
                current = ParsedStage(
                    index=len(ast.stages),
                    base=base,
                    name=name,
                    from_instruction=inst,
                )
                ast.stages.append(current)
            elif current is None:
                if inst.instruction == "ARG":
                    for arg in inst.arguments:
                        key, sep, value = arg.partition('=')
                        ast.global_args[key] = value if sep else None
            else:
                current.instructions.append(inst)

        return ast

    def _logical_lines(self, content: str) -> List[Tuple[int, str]]:
        """
        Joins continuation lines and drops comments, keeping the number of
        the line each instruction starts on.
        """
        lines = []
        buffer: List[str] = []
        start = 0
        for number, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            # Comments and blank lines are dropped even inside a continuation
            if not stripped or stripped.startswith('#'):
                continue
            if not buffer:
                start = number
            if stripped.endswith('\\'):
                buffer.append(stripped[:-1].strip())
                continue
            buffer.append(stripped)
            lines.append((start, ' '.join(p for p in buffer if p)))
            buffer = []
        if buffer:
            lines.append((start, ' '.join(p for p in buffer if p)))
        return lines

    def _parse_instruction(self, line_no: int, logical: str) -> Optional[Instruction]:
        match = _INSTRUCTION.match(logical)
        if not match:
            return None

        inst = match.group(1).upper()
        args_str = (match.group(2) or '').strip()

        flags = []
        if inst in _FLAGGED:
            while args_str.startswith('--'):
                token, _, rest = args_str.partition(' ')
                flags.append(token)
                args_str = rest.strip()

        if inst == "HEALTHCHECK":
            first, _, rest = args_str.partition(' ')
            args = [first.upper()] + self._command_arguments(rest.strip()) if first else []
        elif inst in ("ENV", "LABEL", "ARG"):
            args = self._split_pairs(args_str)
        elif inst in ("FROM", "EXPOSE", "VOLUME") and not args_str.startswith('['):
            args = args_str.split()
        else:
            args = self._command_arguments(args_str)

        return Instruction(
            instruction=inst,
            arguments=args,
            flags=flags,
            raw=logical,
            line=line_no,
        )

    def _command_arguments(self, args_str: str) -> List[str]:
        """
        Exec form (JSON array) becomes a list; shell form stays one string.
        """
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                parsed = json.loads(args_str)
            except json.JSONDecodeError:
                # Not valid JSON, treat as shell form
                return [args_str]
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        return [args_str] if args_str else []

    def _split_pairs(self, args_str: str) -> List[str]:
        """
        Splits KEY=VALUE lists, honouring quotes. The legacy ``KEY VALUE`` form
        yields a single KEY=VALUE item.
        """
        try:
            tokens = shlex.split(args_str)
        except ValueError:
            tokens = args_str.split()
        if not tokens:
            return []
        if '=' not in tokens[0] and len(tokens) > 1:
            return [f"{tokens[0]}={' '.join(tokens[1:])}"]
        return tokens

    @staticmethod
    def _split_from(arguments: List[str]) -> Tuple[str, Optional[str]]:
        if not arguments:
            return "", None
        base = arguments[0]
        name = None
        if len(arguments) >= 3 and arguments[1].lower() == "as":
            name = arguments[2]
        return base, name
