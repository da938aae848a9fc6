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
Converters for rendering a build pipeline as a BuildKit Dockerfile.
"""
import json
import os
from typing import List

from jinja2 import Template

from ..MODELS.build_pipeline import (
    BuildPipeline,
    CopyStep,
    EntrypointStep,
    EnvStep,
    ExposeStep,
    HealthcheckStep,
    LabelStep,
    RunStep,
    WorkdirStep,
)
from ..UTILS.log_config import get_logger

logger = get_logger(__name__)

DOCKERFILE_TEMPLATE = """\
# syntax=docker/dockerfile:1
{% for line in header %}
#{{ (' ' ~ line) if line else '' }}
{% endfor %}

{% for arg in arguments %}
ARG {{ arg.name }}{% if arg.default is not none %}={{ arg.default }}{% endif %}

{% endfor %}
{% for stage in stages %}

{% if stage.description %}
###
### {{ stage.description }}
###

{% endif %}
FROM {{ stage.base }}{% if stage.name %} AS {{ stage.name }}{% endif %}

{% for step in stage.steps %}

{{ step }}
{% endfor %}
{% endfor %}
"""


def _duration(seconds: float) -> str:
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{int(round(seconds * 1000))}ms"


def _comment(text: str) -> List[str]:
    return [f"# {line}".rstrip() for line in text.splitlines()]


def render_step(step) -> str:
    """
    Renders one pipeline step as Dockerfile text, comments included.
    """
    lines: List[str] = []
    comment = getattr(step, "comment", None)
    if comment:
        lines.extend(_comment(comment))

    if isinstance(step, RunStep):
        if step.mounts:
            body = ["RUN \\"]
            body.extend(f"    {mount.render()} \\" for mount in step.mounts)
            body.append(f"  {step.command}")
            lines.append("\n".join(body))
        else:
            lines.append(f"RUN {step.command}")
    elif isinstance(step, CopyStep):
        parts = ["COPY"]
        if step.from_stage:
            parts.append(f"--from={step.from_stage}")
        parts.extend(step.sources)
        parts.append(step.destination)
        lines.append(" ".join(parts))
    elif isinstance(step, EnvStep):
        pairs = [f"{key}={json.dumps(value) if ' ' in value else value}"
                 for key, value in step.variables.items()]
        lines.append("ENV " + " \\\n    ".join(pairs))
    elif isinstance(step, WorkdirStep):
        lines.append(f"WORKDIR {step.path}")
    elif isinstance(step, LabelStep):
        for key, value in step.labels.items():
            escaped = value.replace("'", "'\"'\"'")
            lines.append(f"LABEL {key}='{escaped}'")
    elif isinstance(step, ExposeStep):
        lines.append("EXPOSE " + " ".join(f"{port}/{step.protocol}" for port in step.ports))
    elif isinstance(step, EntrypointStep):
        lines.append(f"ENTRYPOINT {json.dumps(step.command)}")
    elif isinstance(step, HealthcheckStep):
        probe = step.probe
        flags = [
            f"--start-period={_duration(probe.start_period)}",
            f"--interval={_duration(probe.interval)}",
            f"--timeout={_duration(probe.timeout)}",
        ]
        # 3 is the builder's default
        if probe.retries != 3:
            flags.append(f"--retries={probe.retries}")
        lines.append(f"HEALTHCHECK {' '.join(flags)} \\\n    CMD {probe.command()}")
    else:
        raise TypeError(f"Unsupported step {type(step).__name__}")

    return "\n".join(lines)


class DockerfileConverter:
    """
    Converts a build pipeline into Dockerfile text.
    """

    def __init__(self, pipeline: BuildPipeline):
        """
        Initializes the converter.

        :param pipeline: The pipeline to render.
        """
        self.pipeline = pipeline
        self.template = Template(DOCKERFILE_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    def render(self) -> str:
        """
        Renders the Dockerfile.

        :return: Dockerfile content, ending with a newline.
        """
        stages = [
            {
                "name": stage.name,
                "base": stage.base,
                "description": stage.description,
                "steps": [render_step(step) for step in stage.steps],
            }
            for stage in self.pipeline.stages
        ]
        content = self.template.render(
            header=self.pipeline.header,
            arguments=self.pipeline.arguments,
            stages=stages,
        )
        return content.rstrip("\n") + "\n"

    def convert(self, output_path: str = "docker/Dockerfile") -> str:
        """
        Writes the Dockerfile.

        :param output_path: Destination file.
        :return: The path written.
        """
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(self.render())
        logger.info("Dockerfile written to %s", output_path)
        return output_path
