"""
Parsers for image configuration YAML files and build-argument files.
"""
import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..MODELS.server_image import ServerImageConfig
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..UTILS.log_config import get_logger
from ..errors import ConfigError

logger = get_logger(__name__)


class ConfigParser:
    """
    Parser for image configuration files (``docker/image.yaml`` by default).
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, env_file: Optional[str] = None):
        """
        Initializes the parser with an optional context for interpolation.

        :param context: Variables for interpolation. Defaults to the process environment.
        :param env_file: Optional dotenv file whose values override the context.
        """
        self.context = dict(os.environ) if context is None else dict(context)
        if env_file:
            if not os.path.exists(env_file):
                raise ConfigError(f"Environment file {env_file} not found")
            self.context.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})

    def parse(self, config_path: str) -> ServerImageConfig:
        """
        Parses a configuration file from a path.

        :param config_path: Path to the YAML file.
        :return: Validated configuration.
        :raises ConfigError: If the file is missing or invalid.
        """
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        logger.debug("Loading image configuration from %s", config_path)
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> ServerImageConfig:
        """
        Parses a configuration from a YAML string.

        :param content: YAML content.
        :return: Validated configuration.
        :raises ConfigError: On unknown variables, bad YAML or invalid values.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise ConfigError(f"Interpolation failed: {e.args[0]}") from e

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")

        for key in ("manifest_files", "source_dirs", "build_packages", "runtime_packages"):
            if key in data:
                data[key] = self._to_list(data[key])

        try:
            return ServerImageConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return val.split()
        if isinstance(val, (list, tuple)):
            return [str(v) for v in val]
        return [str(val)]


def parse_build_args(pairs: List[str], arg_file: Optional[str] = None) -> Dict[str, str]:
    """
    Merges ``KEY=VALUE`` pairs over the values of a dotenv-format file.

    :param pairs: Command line ``KEY=VALUE`` items; they take precedence.
    :param arg_file: Optional dotenv file.
    :return: Build argument values.
    :raises ConfigError: On malformed pairs or a missing file.
    """
    args: Dict[str, str] = {}
    if arg_file:
        if not os.path.exists(arg_file):
            raise ConfigError(f"Build argument file {arg_file} not found")
        args.update({k: v for k, v in dotenv_values(arg_file).items() if v is not None})
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key.strip():
            raise ConfigError(f"Build argument must be KEY=VALUE, got {pair!r}")
        args[key.strip()] = value
    return args
