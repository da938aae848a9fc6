"""
Command Line Interface for P2I.
"""
import os
import sys
import time

import click

from ..BUILDERS.pipeline_builder import PipelineBuilder
from ..CONVERTERS.to_dockerfile import DockerfileConverter
from ..MANAGERS.health_monitor import HealthMonitor, ProbeState
from ..MODELS.server_image import ServerImageConfig
from ..PARSERS.config_parser import ConfigParser, parse_build_args
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..REGISTRY.layer_cache import LayerCacheIndex
from ..RUNNERS.build_runner import BuildRunner
from ..RUNNERS.cache_planner import LayerPlanner
from ..RUNNERS.pipeline_checks import PipelineChecker, Severity
from ..RUNNERS.stage_graph import StageGraph
from ..UTILS.log_config import get_logger, set_log_level
from ..errors import P2IError

logger = get_logger(__name__)

DOCKERFILE_PATH = os.path.join("docker", "Dockerfile.p2i")


def _config(ctx) -> ServerImageConfig:
    config = ctx.obj.get('config')
    if config is None:
        path = ctx.obj['file']
        if os.path.exists(path):
            config = ConfigParser(env_file=ctx.obj.get('env_file')).parse(path)
        else:
            logger.debug("%s not found, using the default server image", path)
            config = ServerImageConfig()
        ctx.obj['config'] = config
    return config


def _render(config: ServerImageConfig) -> str:
    return DockerfileConverter(PipelineBuilder(config).build()).render()


def _fail(error: P2IError):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.option('--config', '-c', 'file', default=os.path.join('docker', 'image.yaml'),
              help='Image configuration file')
@click.option('--env-file', default=None, help='dotenv file used for interpolation')
@click.option('--log-level', default=None, help='DEBUG, INFO, WARNING or ERROR')
@click.pass_context
def cli(ctx, file, env_file, log_level):
    """
    P2I - Python server to container image pipeline.

    Renders, checks, plans and builds a two-stage image for a Python server.
    """
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['env_file'] = env_file
    if log_level:
        set_log_level(log_level)


@cli.command()
@click.option('--out', '-o', default=None, help='Write the Dockerfile here instead of stdout')
@click.pass_context
def render(ctx, out):
    """Render the Dockerfile."""
    try:
        config = _config(ctx)
        if out:
            DockerfileConverter(PipelineBuilder(config).build()).convert(out)
            click.echo(f"Dockerfile written to {out}")
        else:
            click.echo(_render(config), nl=False)
    except P2IError as e:
        _fail(e)


@cli.command()
@click.argument('dockerfile', required=False)
@click.option('--strict', is_flag=True, help='Fail on warnings too')
@click.pass_context
def check(ctx, dockerfile, strict):
    """Check a Dockerfile (the rendered one by default)."""
    try:
        config = _config(ctx)
        parser = DockerfileParser()
        if dockerfile:
            if not os.path.exists(dockerfile):
                raise click.ClickException(f"{dockerfile} not found")
            ast = parser.parse(dockerfile)
        else:
            ast = parser.parse_from_string(_render(config))

        if ast.stages:
            for name in StageGraph(ast).unreachable():
                click.echo(f"note: stage {name} is not needed by the final stage")

        checker = PipelineChecker(expected_ports=config.ports.as_list(), probe=config.probe)
        violations = checker.check(ast)
    except P2IError as e:
        _fail(e)

    for violation in violations:
        click.echo(str(violation))

    errors = [v for v in violations if v.severity == Severity.ERROR]
    if errors or (strict and violations):
        click.echo(f"{len(violations)} problem(s) found.")
        sys.exit(1)
    click.echo("No problems found.")


@cli.command()
@click.option('--context', 'context_dir', default='.', help='Build context directory')
@click.option('--dockerfile', default=None, help='Dockerfile to plan; rendered from the configuration if omitted')
@click.option('--tag', '-t', default=None, help='Image tag the plan is recorded under')
@click.option('--build-arg', 'build_arg', multiple=True, help='KEY=VALUE build argument')
@click.option('--record', is_flag=True, help='Record the plan as built for --tag')
@click.option('--cache-dir', default=None, help='Layer cache index directory')
@click.pass_context
def plan(ctx, context_dir, dockerfile, tag, build_arg, record, cache_dir):
    """Show which layers a build would reuse."""
    try:
        config = _config(ctx)
        parser = DockerfileParser()
        ast = parser.parse(dockerfile) if dockerfile else parser.parse_from_string(_render(config))
        build_plan = LayerPlanner(ast, context_dir, parse_build_args(list(build_arg))).plan()
        index = LayerCacheIndex(cache_dir)
    except P2IError as e:
        _fail(e)

    click.echo(f"{'STAGE':10} {'LINE':>5} {'STATUS':8} {'KEY':19} INSTRUCTION")
    click.echo("-" * 72)
    for step, cached in index.compare(tag, build_plan):
        status = "cached" if cached else "rebuild"
        summary = step.instruction.splitlines()[0]
        click.echo(f"{step.stage:10} {step.line:>5} {status:8} {step.key[7:26]} {summary}")

    if record:
        if not tag:
            raise click.UsageError("--record needs --tag")
        index.record(tag, build_plan)
        click.echo(f"Plan recorded for {tag}.")


@cli.command()
@click.option('--context', 'context_dir', default='.', help='Build context directory')
@click.option('--tag', '-t', required=True, help='Image tag')
@click.option('--build-arg', 'build_arg', multiple=True, help='KEY=VALUE build argument')
@click.option('--build-arg-file', default=None, help='dotenv file with build arguments')
@click.option('--dockerfile', default=DOCKERFILE_PATH, show_default=True,
              help='Where to render the Dockerfile, relative to the context')
@click.option('--force', is_flag=True, help='Overwrite a differing Dockerfile at --dockerfile')
@click.option('--target', default=None, help='Stop at this stage')
@click.option('--retries', default=3, show_default=True, help='Attempts for transient failures')
@click.option('--skip-verify', is_flag=True, help='Do not check the base image exists first')
@click.option('--log-file', default=None, help='Write the full build output here')
@click.option('--cache-dir', default=None, help='Layer cache index directory')
@click.pass_context
def build(ctx, context_dir, tag, build_arg, build_arg_file, dockerfile, force, target, retries, skip_verify,
          log_file, cache_dir):
    """Render the Dockerfile into the context and build the image."""
    try:
        config = _config(ctx)
        builder = PipelineBuilder(config)
        args = parse_build_args(list(build_arg), build_arg_file)
        converter = DockerfileConverter(builder.build())
        owned = dockerfile == DOCKERFILE_PATH
        dockerfile = os.path.join(context_dir, dockerfile)
        if os.path.exists(dockerfile) and not (owned or force):
            with open(dockerfile, encoding="utf-8") as f:
                if f.read() != converter.render():
                    raise click.ClickException(
                        f"{dockerfile} exists and differs from the rendered Dockerfile; use --force to replace it"
                    )
        converter.convert(dockerfile)

        build_plan = LayerPlanner(DockerfileParser().parse(dockerfile), context_dir, args).plan()

        if not log_file:
            log_dir = os.environ.get("P2I_LOG_DIR") or os.path.join(os.path.expanduser("~"), ".p2i", "logs")
            log_file = os.path.join(log_dir, "build-" + tag.replace("/", "_").replace(":", "_") + ".log")

        runner = BuildRunner(
            context_dir=context_dir,
            dockerfile=dockerfile,
            tag=tag,
            build_args=args,
            target=target,
            log_file=log_file,
            resolver=None if skip_verify else builder.resolver,
        )
        runner.run_with_retries(attempts=retries)
        if not target:
            LayerCacheIndex(cache_dir).record(tag, build_plan)
    except P2IError as e:
        _fail(e)
    click.echo(f"Built {tag}.")


@cli.command()
@click.option('--url', default=None, help='Health URL; the configured probe URL by default')
@click.option('--max-checks', default=0, help='Stop after this many probes (0 runs until unhealthy)')
@click.pass_context
def probe(ctx, url, max_checks):
    """Poll a running container with the image's liveness policy."""
    try:
        config = _config(ctx)
    except P2IError as e:
        _fail(e)

    policy = config.probe.model_copy(update={'url': url}) if url else config.probe
    monitor = HealthMonitor(policy)
    checks = 0
    try:
        while True:
            state = monitor.run_once()
            checks += 1
            click.echo(f"{checks:4} {state.value:10} {monitor.health.last_output[:60]}")
            if state == ProbeState.UNHEALTHY:
                sys.exit(1)
            if max_checks and checks >= max_checks:
                break
            time.sleep(policy.interval)
    except KeyboardInterrupt:
        click.echo("\nStopped.")

    sys.exit(0 if monitor.health.status == ProbeState.HEALTHY else 1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
