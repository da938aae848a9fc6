# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of BuildKit image builds with log capture and failure classification.
"""
import os
import subprocess
from collections import deque
from typing import Dict, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..BUILDERS.base_image import BaseImageResolver
from ..UTILS.log_config import get_logger
from ..errors import BuildError, ResolutionError, ToolchainError, TransientBuildError

logger = get_logger(__name__)

# Checked in order; the first match decides the category
_FAILURE_MARKERS = [
    (TransientBuildError, [
        "temporary failure in name resolution",
        "temporary failure resolving",
        "could not connect",
        "connection reset",
        "connection refused",
        "connection timed out",
        "i/o timeout",
        "tls handshake timeout",
        "toomanyrequests",
        "503 service unavailable",
        "502 bad gateway",
        "could not resolve host",
        "failed to fetch",
        "read timed out",
    ]),
    (ResolutionError, [
        "manifest unknown",
        "not found: manifest",
        "failed to resolve source metadata",
        "pull access denied",
        "unable to locate package",
        "has no installation candidate",
        "solverproblemerror",
        "could not find a version that satisfies the requirement",
        "no matching distribution found",
        "is not compatible with any of the available",
        "failed to compute cache key",
        "lock file is not compatible",
        "poetry.lock is not consistent",
    ]),
    (ToolchainError, [
        "error: command 'gcc' failed",
        "error: command '/usr/bin/gcc' failed",
        "failed building wheel",
        "error: could not compile",
        "fatal error:",
        "collect2: error",
        "error: linker",
        "command 'x86_64-linux-gnu-gcc' failed",
    ]),
]


def classify_failure(output: str, exit_code: Optional[int] = None) -> BuildError:
    """
    Maps build output to the matching error category.

    :param output: Tail of the build log.
    :param exit_code: Exit status of the build command.
    :return: The error to raise; a plain BuildError if nothing matched.
    """
    lower = (output or "").lower()
    for error_type, markers in _FAILURE_MARKERS:
        for marker in markers:
            if marker in lower:
                return error_type(
                    f"{error_type.category} error: build failed ({marker})",
                    exit_code=exit_code,
                    log_tail=output,
                )
    return BuildError(f"Build failed with exit code {exit_code}", exit_code=exit_code, log_tail=output)


class BuildRunner:
    """
    Runs ``docker build`` for one tagged image.
    """
    def __init__(self,
                 context_dir: str,
                 dockerfile: str,
                 tag: str,
                 build_args: Optional[Dict[str, str]] = None,
                 target: Optional[str] = None,
                 log_file: Optional[str] = None,
                 docker: str = "docker",
                 resolver: Optional[BaseImageResolver] = None):
        """
        Initializes the build runner.

        Args:
            context_dir (str): Build context root.
            dockerfile (str): Path to the Dockerfile.
            tag (str): Tag for the resulting image.
            build_args (Optional[Dict[str, str]]): Build argument overrides.
            target (Optional[str]): Stage to stop at; the final stage if None.
            log_file (Optional[str]): File receiving the full build output.
            docker (str): Docker CLI executable.
            resolver (Optional[BaseImageResolver]): Checks the base image before building.
        """
        self.context_dir = context_dir
        self.dockerfile = dockerfile
        self.tag = tag
        self.build_args = dict(build_args or {})
        self.target = target
        self.log_file = log_file
        self.docker = docker
        self.resolver = resolver
        self.tail_lines = 60

    def command(self) -> List[str]:
        """
        The build command line.
        """
        cmd = [self.docker, "build", "-f", self.dockerfile, "-t", self.tag, "--progress=plain"]
        for key in sorted(self.build_args):
            cmd += ["--build-arg", f"{key}={self.build_args[key]}"]
        if self.target:
            cmd += ["--target", self.target]
        cmd.append(self.context_dir)
        return cmd

    def environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["DOCKER_BUILDKIT"] = "1"
        return env

    def preflight(self) -> None:
        """
        Fails before any stage runs if the requested base image is not published.

        Raises:
            ResolutionError: Unknown version.
            TransientBuildError: Registry unreachable.
        """
        if self.resolver is None:
            return
        self.resolver.verify(self.build_args.get(self.resolver.argument_name))

    def run(self) -> int:
        """
        Runs the build once.

        Returns:
            int: 0 on success.

        Raises:
            BuildError: Classified failure; no image is tagged.
        """
        self.preflight()
        command = self.command()
        logger.info("Running: %s", " ".join(command))

        tail: deque = deque(maxlen=self.tail_lines)
        log_handle = None
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            log_handle = open(self.log_file, "a", encoding="utf-8")

        try:
            try:
                process = subprocess.Popen(
                    command,
                    env=self.environment(),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    shell=False,
                )
            except FileNotFoundError as e:
                raise BuildError(f"Cannot run {self.docker}: {e}") from e

            for line in process.stdout:
                tail.append(line.rstrip("\n"))
                logger.debug("%s", line.rstrip("\n"))
                if log_handle:
                    log_handle.write(line)
            exit_code = process.wait()
        finally:
            if log_handle:
                log_handle.close()

        if exit_code != 0:
            error = classify_failure("\n".join(tail), exit_code)
            logger.error("Build of %s failed: %s", self.tag, error)
            raise error

        logger.info("Built %s", self.tag)
        return 0

    def run_with_retries(self, attempts: int = 3, backoff: float = 2.0) -> int:
        """
        Runs the build, re-invoking it only for transient failures. Completed
        layers are reused from the builder cache on each new attempt.
        """
        retrying = Retrying(
            stop=stop_after_attempt(max(1, attempts)),
            wait=wait_exponential(multiplier=backoff, max=60),
            retry=retry_if_exception_type(TransientBuildError),
            before_sleep=lambda state: logger.warning(
                "Transient failure, retrying build (attempt %d of %d)",
                state.attempt_number + 1, attempts,
            ),
            reraise=True,
        )
        return retrying(self.run)
