"""
Unit tests for the build runner, with subprocess patched.
"""
from unittest.mock import MagicMock, patch

import pytest

from p2i.BUILDERS.base_image import BaseImageResolver
from p2i.RUNNERS.build_runner import BuildRunner, classify_failure
from p2i.errors import BuildError, ResolutionError, ToolchainError, TransientBuildError


def _process(lines, exit_code):
    process = MagicMock()
    process.stdout = iter(lines)
    process.wait.return_value = exit_code
    return process


def _runner(**kwargs):
    kwargs.setdefault("context_dir", ".")
    kwargs.setdefault("dockerfile", "docker/Dockerfile")
    kwargs.setdefault("tag", "synapse:test")
    return BuildRunner(**kwargs)


class TestClassifyFailure:

    def test_categories(self):
        cases = {
            "ERROR: docker.io/library/python:2.1-slim: not found: manifest unknown": ResolutionError,
            "E: Unable to locate package libwebp6": ResolutionError,
            "SolverProblemError: Because synapse depends on foo (>=9)": ResolutionError,
            "error: command 'gcc' failed with exit status 1": ToolchainError,
            "Failed building wheel for lxml": ToolchainError,
            "Temporary failure in name resolution": TransientBuildError,
            "dial tcp: i/o timeout": TransientBuildError,
        }
        for output, expected in cases.items():
            error = classify_failure(output, 1)
            assert type(error) is expected, output
            assert error.exit_code == 1
            assert error.log_tail == output

    def test_unknown_failure(self):
        error = classify_failure("something odd happened", 2)
        assert type(error) is BuildError
        assert error.category == "build"


class TestBuildRunner:

    def test_command(self):
        runner = _runner(build_args={"PYTHON_VERSION": "3.10", "A": "1"}, target="builder")
        assert runner.command() == [
            "docker", "build", "-f", "docker/Dockerfile", "-t", "synapse:test", "--progress=plain",
            "--build-arg", "A=1", "--build-arg", "PYTHON_VERSION=3.10",
            "--target", "builder", ".",
        ]
        assert runner.environment()["DOCKER_BUILDKIT"] == "1"

    def test_success_writes_log(self, tmp_path):
        log_file = tmp_path / "logs" / "build.log"
        process = _process(["#1 [base] FROM python\n", "#2 DONE\n"], 0)
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=process) as popen:
            assert _runner(log_file=str(log_file)).run() == 0
        assert popen.call_args[1]["shell"] is False
        assert popen.call_args[1]["env"]["DOCKER_BUILDKIT"] == "1"
        assert log_file.read_text() == "#1 [base] FROM python\n#2 DONE\n"

    def test_failure_is_classified(self):
        process = _process(["#5 error: command 'gcc' failed\n"], 1)
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=process):
            with pytest.raises(ToolchainError) as info:
                _runner().run()
        assert info.value.exit_code == 1
        assert "gcc" in info.value.log_tail

    def test_transient_failure_retried(self):
        processes = [
            _process(["Temporary failure resolving 'deb.debian.org'\n",
                      "Temporary failure in name resolution\n"], 100),
            _process(["done\n"], 0),
        ]
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", side_effect=processes) as popen:
            assert _runner().run_with_retries(attempts=3, backoff=0) == 0
        assert popen.call_count == 2

    def test_permanent_failure_not_retried(self):
        processes = [_process(["E: Unable to locate package libfoo\n"], 100)]
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", side_effect=processes) as popen:
            with pytest.raises(ResolutionError):
                _runner().run_with_retries(attempts=3, backoff=0)
        assert popen.call_count == 1

    def test_retries_exhausted(self):
        processes = [_process(["i/o timeout\n"], 1) for _ in range(2)]
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", side_effect=processes) as popen:
            with pytest.raises(TransientBuildError):
                _runner().run_with_retries(attempts=2, backoff=0)
        assert popen.call_count == 2

    def test_missing_docker(self):
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", side_effect=FileNotFoundError("docker")):
            with pytest.raises(BuildError):
                _runner().run()


class TestPreflight:

    def test_unpublished_version_aborts_before_build(self):
        registry = MagicMock()
        registry.tag_exists.return_value = False
        runner = _runner(
            build_args={"PYTHON_VERSION": "2.1"},
            resolver=BaseImageResolver(registry=registry),
        )
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen") as popen:
            with pytest.raises(ResolutionError):
                runner.run_with_retries(attempts=3, backoff=0)
        popen.assert_not_called()
        assert registry.tag_exists.call_args[0][0].tag == "2.1-slim"

    def test_malformed_version_aborts_before_build(self):
        registry = MagicMock()
        runner = _runner(
            build_args={"PYTHON_VERSION": "three"},
            resolver=BaseImageResolver(registry=registry),
        )
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen") as popen:
            with pytest.raises(ResolutionError):
                runner.run()
        popen.assert_not_called()
        registry.tag_exists.assert_not_called()

    def test_published_version_builds(self):
        registry = MagicMock()
        registry.tag_exists.return_value = True
        runner = _runner(resolver=BaseImageResolver(registry=registry))
        with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=_process([], 0)):
            assert runner.run() == 0
        assert registry.tag_exists.call_args[0][0].tag == "3.9-slim"
