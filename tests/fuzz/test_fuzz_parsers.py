import random
import string

from p2i.PARSERS.config_parser import ConfigParser
from p2i.PARSERS.dockerfile_parser import DockerfileParser
from p2i.RUNNERS.pipeline_checks import PipelineChecker
from p2i.RUNNERS.stage_graph import StageGraph
from p2i.errors import ConfigError, PipelineError

KEYWORDS = ["FROM", "RUN", "COPY", "ENV", "ARG", "LABEL", "EXPOSE", "HEALTHCHECK", "ENTRYPOINT", "CMD"]


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


def random_dockerfile(lines):
    out = []
    for _ in range(lines):
        keyword = random.choice(KEYWORDS + [random_string(3)])
        flags = random.choice(["", "--mount=type=cache,target=/x ", "--from=0 ", "--interval= ", "--"])
        out.append(f"{keyword} {flags}{random_string(random.randint(0, 40))}")
    return "\n".join(out)


def test_fuzz_dockerfile_parser():
    parser = DockerfileParser()
    for _ in range(100):
        parser.parse_from_string(random_string(random.randint(0, 1000)))


def test_fuzz_dockerfile_checks():
    parser = DockerfileParser()
    checker = PipelineChecker(expected_ports=[8008, 8009, 8448])
    for _ in range(100):
        ast = parser.parse_from_string(random_dockerfile(random.randint(0, 20)))
        checker.check(ast)
        if ast.stages:
            try:
                StageGraph(ast).resolve_order()
            except PipelineError:
                pass


def test_fuzz_config_parser():
    parser = ConfigParser(context={})
    for _ in range(100):
        content = random_string(random.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ConfigError:
            pass


def test_edge_cases_parsers():
    dockerfile_parser = DockerfileParser()

    # Empty string
    assert dockerfile_parser.parse_from_string("").stages == []

    # Only whitespace
    dockerfile_parser.parse_from_string("   \n\t  ")

    # Very long line
    dockerfile_parser.parse_from_string("RUN " + "a" * 10000)

    # Many line continuations
    ast = dockerfile_parser.parse_from_string("RUN echo \\\n" * 100 + "hello")
    assert len(ast.instructions) == 1

    # Trailing continuation
    dockerfile_parser.parse_from_string("FROM alpine\nRUN echo \\")

    # Unbalanced quotes and brackets
    dockerfile_parser.parse_from_string('ENV A="unterminated\nCMD ["x", \nLABEL \'a=b')
