"""
Shared fixtures: a minimal server source tree to use as build context.
"""
import pytest


@pytest.fixture
def build_context(tmp_path):
    """A context holding everything the default pipeline copies."""
    (tmp_path / "pyproject.toml").write_text('[tool.poetry]\nname = "synapse"\nversion = "1.0"\n')
    (tmp_path / "poetry.lock").write_text("# locked\n")
    (tmp_path / "README.rst").write_text("Synapse\n")
    package = tmp_path / "synapse"
    package.mkdir()
    (package / "__init__.py").write_text('__version__ = "1.0"\n')
    (package / "app.py").write_text("def main():\n    pass\n")
    docker = tmp_path / "docker"
    docker.mkdir()
    (docker / "start.py").write_text("#!/usr/local/bin/python\n")
    (docker / "conf").mkdir()
    (docker / "conf" / "homeserver.yaml").write_text("server_name: example.com\n")
    return tmp_path
