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
Exception hierarchy for p2i.

Build-time errors are always fatal for the build that raised them. Only
TransientBuildError is worth re-invoking the build for.
"""
from typing import Optional


class P2IError(Exception):
    """Base class for all p2i errors."""


class ConfigError(P2IError):
    """The image configuration could not be read or is invalid."""


class PipelineError(P2IError):
    """The stage graph is malformed."""


class BuildError(P2IError):
    """
    A build step failed.

    :param message: Human readable summary.
    :param exit_code: Exit status of the failed build process, if any.
    :param log_tail: Last lines of build output leading up to the failure.
    """

    category = "build"

    def __init__(self, message: str, exit_code: Optional[int] = None, log_tail: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.log_tail = log_tail


class ResolutionError(BuildError):
    """A base image, OS package or locked dependency could not be resolved."""

    category = "resolution"


class ToolchainError(BuildError):
    """Native compilation of a dependency failed."""

    category = "toolchain"


class TransientBuildError(BuildError):
    """Fetching the base image or packages failed; re-invoking may succeed."""

    category = "transient"
