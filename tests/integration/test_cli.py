import json
from unittest.mock import MagicMock, patch
from urllib.error import URLError

import pytest
from click.testing import CliRunner

from p2i.CLI.main import cli

BAD_DOCKERFILE = """\
FROM python:3.9-slim
COPY . /app
RUN pip install -r requirements.txt
ENTRYPOINT python -m app
"""


@pytest.fixture
def missing_config(tmp_path):
    return str(tmp_path / "absent.yaml")


def _process(lines, exit_code):
    process = MagicMock()
    process.stdout = iter(lines)
    process.wait.return_value = exit_code
    return process


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'render' in result.output
    assert 'probe' in result.output


def test_render_defaults(missing_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'render'])
    assert result.exit_code == 0
    assert 'FROM base AS builder' in result.output
    assert 'ENTRYPOINT ["/start.py"]' in result.output


def test_render_to_file(tmp_path, missing_config):
    out = tmp_path / "docker" / "Dockerfile"
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'render', '-o', str(out)])
    assert result.exit_code == 0
    assert out.read_text().startswith("# syntax=docker/dockerfile:1")


def test_render_with_config(tmp_path):
    config = tmp_path / "image.yaml"
    config.write_text("name: homeserver\npython_version: ${PY:-3.11}\n")
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', str(config), 'render'])
    assert result.exit_code == 0
    assert 'ARG PYTHON_VERSION=3.11' in result.output
    assert 'homeserver' in result.output


def test_invalid_config(tmp_path):
    config = tmp_path / "image.yaml"
    config.write_text("app_root: relative\n")
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', str(config), 'render'])
    assert result.exit_code == 1
    assert 'Error' in result.output


def test_check_rendered(missing_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'check'])
    assert result.exit_code == 0
    assert 'No problems found.' in result.output


def test_check_bad_dockerfile(tmp_path, missing_config):
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text(BAD_DOCKERFILE)
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'check', str(dockerfile)])
    assert result.exit_code == 1
    assert '[manifest-before-source]' in result.output
    assert '[healthcheck-policy]' in result.output
    assert '[entrypoint-exec-form]' in result.output


def test_check_strict(tmp_path, missing_config):
    runner = CliRunner()
    rendered = runner.invoke(cli, ['-c', missing_config, 'render']).output
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text(rendered + 'CMD ["--help"]\n')

    result = runner.invoke(cli, ['-c', missing_config, 'check', str(dockerfile)])
    assert result.exit_code == 0
    result = runner.invoke(cli, ['-c', missing_config, 'check', '--strict', str(dockerfile)])
    assert result.exit_code == 1


def test_check_missing_dockerfile(tmp_path, missing_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'check', str(tmp_path / "nope")])
    assert result.exit_code == 1


def test_plan_and_record(build_context, tmp_path, missing_config):
    cache_dir = str(tmp_path / "cache")
    args = ['-c', missing_config, 'plan', '--context', str(build_context), '--cache-dir', cache_dir]
    runner = CliRunner()

    result = runner.invoke(cli, args + ['--tag', 'synapse:dev', '--record'])
    assert result.exit_code == 0
    assert 'rebuild' in result.output
    assert 'Plan recorded for synapse:dev.' in result.output

    result = runner.invoke(cli, args)
    assert result.exit_code == 0
    assert 'rebuild' not in result.output

    (build_context / "synapse" / "app.py").write_text("changed = True\n")
    result = runner.invoke(cli, args)
    lines = [l for l in result.output.splitlines() if 'rebuild' in l]
    assert lines
    assert not any('--no-root' in l for l in lines)


def test_plan_record_needs_tag(build_context, tmp_path, missing_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'plan', '--context', str(build_context),
                                 '--cache-dir', str(tmp_path / "cache"), '--record'])
    assert result.exit_code == 2


def test_plan_missing_source(tmp_path, missing_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['-c', missing_config, 'plan', '--context', str(tmp_path),
                                 '--cache-dir', str(tmp_path / "cache")])
    assert result.exit_code == 1
    assert 'not found in build context' in result.output


def _build_args(build_context, tmp_path, missing_config):
    return ['-c', missing_config, 'build', '--context', str(build_context), '--tag', 'synapse:dev',
            '--log-file', str(tmp_path / "build.log"), '--cache-dir', str(tmp_path / "cache")]


def test_build(build_context, tmp_path, missing_config):
    runner = CliRunner()
    with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=_process(["ok\n"], 0)) as popen:
        result = runner.invoke(cli, _build_args(build_context, tmp_path, missing_config)
                               + ['--skip-verify', '--build-arg', 'PYTHON_VERSION=3.10'])
    assert result.exit_code == 0
    assert 'Built synapse:dev.' in result.output
    assert (build_context / "docker" / "Dockerfile.p2i").exists()

    command = popen.call_args[0][0]
    assert command[:2] == ["docker", "build"]
    assert command[command.index("-f") + 1].endswith("Dockerfile.p2i")
    assert "PYTHON_VERSION=3.10" in command

    index = json.loads((tmp_path / "cache" / "index.json").read_text())
    assert "synapse:dev" in index["plans"]


def test_build_keeps_hand_written_dockerfile(build_context, tmp_path, missing_config):
    hand_written = build_context / "docker" / "Dockerfile"
    hand_written.write_text("# hand-written\nFROM python:3.9-slim\n")
    runner = CliRunner()
    with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=_process(["ok\n"], 0)):
        result = runner.invoke(cli, _build_args(build_context, tmp_path, missing_config) + ['--skip-verify'])
    assert result.exit_code == 0
    assert hand_written.read_text() == "# hand-written\nFROM python:3.9-slim\n"


def test_build_refuses_to_replace_dockerfile(build_context, tmp_path, missing_config):
    hand_written = build_context / "docker" / "Dockerfile"
    hand_written.write_text("# hand-written\n")
    args = _build_args(build_context, tmp_path, missing_config) + ['--skip-verify', '--dockerfile', 'docker/Dockerfile']
    runner = CliRunner()
    with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=_process(["ok\n"], 0)) as popen:
        result = runner.invoke(cli, args)
        assert result.exit_code == 1
        assert '--force' in result.output
        assert hand_written.read_text() == "# hand-written\n"
        popen.assert_not_called()

        result = runner.invoke(cli, args + ['--force'])
    assert result.exit_code == 0
    assert hand_written.read_text().startswith("# syntax=docker/dockerfile:1")


def test_build_failure(build_context, tmp_path, missing_config):
    runner = CliRunner()
    process = _process(["E: Unable to locate package libwebp6\n"], 100)
    with patch("p2i.RUNNERS.build_runner.subprocess.Popen", return_value=process):
        result = runner.invoke(cli, _build_args(build_context, tmp_path, missing_config) + ['--skip-verify'])
    assert result.exit_code == 1
    assert 'resolution error' in result.output
    assert not (tmp_path / "cache" / "index.json").exists()


def test_build_unpublished_base(build_context, tmp_path, missing_config):
    runner = CliRunner()
    with patch("p2i.REGISTRY.registry_client.RegistryClient.tag_exists", return_value=False), \
            patch("p2i.RUNNERS.build_runner.subprocess.Popen") as popen:
        result = runner.invoke(cli, _build_args(build_context, tmp_path, missing_config)
                               + ['--build-arg', 'PYTHON_VERSION=2.1'])
    assert result.exit_code == 1
    assert 'No published image' in result.output
    popen.assert_not_called()


def test_build_bad_argument(build_context, tmp_path, missing_config):
    runner = CliRunner()
    result = runner.invoke(cli, _build_args(build_context, tmp_path, missing_config) + ['--build-arg', 'NOPE'])
    assert result.exit_code == 1


@pytest.fixture
def fast_probe(tmp_path):
    config = tmp_path / "image.yaml"
    config.write_text("probe:\n  interval: 0.01\n  timeout: 1\n  start_period: 0\n")
    return str(config)


def test_probe_unhealthy(fast_probe):
    runner = CliRunner()
    with patch("p2i.MANAGERS.health_monitor.urlopen", MagicMock(side_effect=URLError("refused"))):
        result = runner.invoke(cli, ['-c', fast_probe, 'probe', '--max-checks', '10'])
    assert result.exit_code == 1
    assert 'unhealthy' in result.output
    assert len(result.output.strip().splitlines()) == 3


def test_probe_healthy(fast_probe):
    response = MagicMock()
    response.status = 200
    response.read.return_value = b"OK"
    urlopen = MagicMock()
    urlopen.return_value.__enter__.return_value = response
    runner = CliRunner()
    with patch("p2i.MANAGERS.health_monitor.urlopen", urlopen):
        result = runner.invoke(cli, ['-c', fast_probe, 'probe', '--max-checks', '2',
                                     '--url', 'http://localhost:9000/health'])
    assert result.exit_code == 0
    assert 'healthy' in result.output
    assert urlopen.call_args[0][0] == 'http://localhost:9000/health'
