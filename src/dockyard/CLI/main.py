"""
Command Line Interface for dockyard.
"""
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import click
import yaml

from ..errors import DockyardError, ParseError, RuntimeUnavailable, ServiceNotFound
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import DownOptions, ServiceOrchestrator, UpOptions
from ..MODELS.orchestration_config import Deployment
from ..MODELS.runtime_state import ExitCode, OperationResult
from ..MODELS.settings import Settings
from ..PARSERS.compose_parser import ComposeParser
from ..RUNTIME.memory import InMemoryRuntime
from ..RUNTIME.process import ProcessRuntime
from ..UTILS.logging import bind_deployment, configure_logging, get_logger

log = get_logger(__name__)


def build_runtime(kind: str, settings: Settings):
    if kind == 'memory':
        return InMemoryRuntime()
    return ProcessRuntime(state_dir=settings.state_dir)


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--project-name', '-p', default=None, help='Deployment name (defaults to the directory name)')
@click.option('--runtime', 'runtime_kind', type=click.Choice(['process', 'memory']), default='process',
              help='Runtime backing the containers')
@click.option('--state-dir', default=None, help='Directory holding runtime state')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']), default=None)
@click.option('--log-format', type=click.Choice(['console', 'json']), default=None)
@click.pass_context
def cli(ctx, file, project_name, runtime_kind, state_dir, log_level, log_format):
    """
    dockyard - multi-service deployments from a compose file.

    Brings services up in dependency order, waits for their health probes
    and tears everything down in reverse.
    """
    ctx.ensure_object(dict)
    settings = Settings.from_env(state_dir=state_dir, log_level=log_level, log_format=log_format)
    configure_logging(settings.log_level, settings.log_format)

    ctx.obj['file'] = file
    ctx.obj['project_name'] = project_name
    ctx.obj['settings'] = settings
    # Tests pass their own runtime through obj.
    runtime = ctx.obj.get('runtime') or build_runtime(runtime_kind, settings)
    ctx.obj['runtime'] = runtime
    log.debug("runtime_selected", runtime=type(runtime).__name__, state_dir=settings.state_dir)
    ctx.obj['orchestrator'] = ServiceOrchestrator(runtime, settings)


def load_deployment(ctx) -> Deployment:
    """
    Parses the compose file, exiting with a fatal error code if it is
    missing or invalid.
    """
    file = ctx.obj['file']
    if not os.path.exists(file):
        click.echo(f"Error: {file} not found.", err=True)
        ctx.exit(ExitCode.FATAL_ERROR)
    try:
        deployment = ComposeParser().parse(file, name=ctx.obj['project_name'])
    except ParseError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(ExitCode.FATAL_ERROR)
    bind_deployment(deployment.name)
    return deployment


def run_interruptible(orchestrator: ServiceOrchestrator, operation, *args):
    """
    Runs ``operation`` off the main thread so Ctrl+C cancels it instead of
    killing the process half way.
    """
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(operation, *args)
        while True:
            try:
                return future.result(timeout=0.2)
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                click.echo("\nCancelling...", err=True)
                orchestrator.cancel()


def echo_result(result: OperationResult):
    click.echo(f"{'SERVICE':15} {'STATE':10} {'ATTEMPTS':8} ERROR")
    click.echo("-" * 50)
    for report in result.services:
        click.echo(f"{report.name:15} {report.state.value:10} {report.attempts:<8} {report.error or ''}")
    for kind, table in (("network", result.networks), ("volume", result.volumes)):
        for name, outcome in sorted(table.items()):
            click.echo(f"{kind} {name}: {outcome}")
    if result.cancelled:
        click.echo("Operation cancelled.", err=True)
    if result.fatal_error:
        click.echo(f"Error: {result.fatal_error}", err=True)


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.option('--fail-fast', is_flag=True, help='Tear everything down on the first failed service')
@click.pass_context
def up(ctx, detach, fail_fast):
    """Start services defined in the compose file."""
    deployment = load_deployment(ctx)
    orchestrator: ServiceOrchestrator = ctx.obj['orchestrator']
    result = run_interruptible(orchestrator, orchestrator.up, deployment,
                               UpOptions(detached=detach, fail_fast=fail_fast))
    echo_result(result)
    exit_code = result.exit_code

    if not detach and result.exit_code is not ExitCode.FATAL_ERROR and not result.cancelled:
        click.echo("Attached to service logs. Press Ctrl+C to stop.")
        aggregator = LogAggregator({
            name: orchestrator.logs(deployment, name, follow=True)
            for name in deployment.services
        })
        try:
            aggregator.tail_logs(click.echo)
        except KeyboardInterrupt:
            aggregator.cancel()
        click.echo("\nStopping services...")
        down_result = run_interruptible(orchestrator, orchestrator.down, deployment, DownOptions())
        echo_result(down_result)
        # Worst of up and down.
        exit_code = max(exit_code, down_result.exit_code)

    ctx.exit(int(exit_code))


@cli.command()
@click.option('--purge-volumes', is_flag=True, help='Also remove named volumes')
@click.option('--keep-anonymous-volumes', is_flag=True, help='Keep the anonymous volumes of removed containers')
@click.option('--timeout', '-t', type=float, default=None, help='Stop grace period in seconds')
@click.pass_context
def down(ctx, purge_volumes, keep_anonymous_volumes, timeout):
    """Stop and remove all services."""
    deployment = load_deployment(ctx)
    orchestrator: ServiceOrchestrator = ctx.obj['orchestrator']
    options = DownOptions(purge_volumes=purge_volumes, keep_anonymous_volumes=keep_anonymous_volumes,
                          timeout=timeout)
    result = run_interruptible(orchestrator, orchestrator.down, deployment, options)
    echo_result(result)
    ctx.exit(result.exit_code)


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status"""
    deployment = load_deployment(ctx)
    orchestrator: ServiceOrchestrator = ctx.obj['orchestrator']
    try:
        rows = orchestrator.ps(deployment)
    except RuntimeUnavailable as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(ExitCode.FATAL_ERROR)
    click.echo(f"{'SERVICE':15} {'STATUS':10} CONTAINER")
    click.echo("-" * 40)
    for row in rows:
        container = row.handle.name if row.handle else ''
        click.echo(f"{row.name:15} {row.state.value:10} {container}")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--follow', '-f', is_flag=True, help='Keep streaming new output')
@click.pass_context
def logs(ctx, services, follow):
    """Show service logs"""
    deployment = load_deployment(ctx)
    orchestrator: ServiceOrchestrator = ctx.obj['orchestrator']
    if not services:
        services = list(deployment.services)

    try:
        streams = {name: orchestrator.logs(deployment, name, follow=follow) for name in services}
    except (ServiceNotFound, RuntimeUnavailable) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(ExitCode.FATAL_ERROR)

    if follow:
        aggregator = LogAggregator(streams)
        try:
            aggregator.tail_logs(click.echo)
        except KeyboardInterrupt:
            aggregator.cancel()
        return

    width = max(len(name) for name in streams)
    for name, stream in streams.items():
        try:
            for line in stream:
                click.echo(f"{name:{width}} | {line}")
        except DockyardError as e:
            click.echo(f"Error: {name}: {e}", err=True)


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the compose file and print the resolved deployment"""
    deployment = load_deployment(ctx)
    click.echo(yaml.safe_dump(deployment.model_dump(mode='json'), sort_keys=False), nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
