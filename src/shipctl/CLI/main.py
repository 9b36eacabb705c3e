"""
Command Line Interface for shipctl.
"""
import functools
import logging
import os
import signal

import click

from ..errors import ConfigError, ShipctlError
from ..MANAGERS.lifecycle_orchestrator import LifecycleOrchestrator
from ..MANAGERS.state_tracker import StateTracker
from ..MODELS.service_spec import RestartPolicy
from ..PARSERS.config_parser import ConfigParser
from ..RUNTIME.engine_client import EngineClient

INTERRUPTED_EXIT_CODE = 130


def handle_errors(func):
    """
    Maps shipctl errors and interrupts to a message on stderr and an exit code.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return func(*args, **kwargs)
        except ShipctlError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(e.exit_code)
        except KeyboardInterrupt:
            click.echo("\nInterrupted.", err=True)
            ctx.exit(INTERRUPTED_EXIT_CODE)
    return wrapper


def service_options(func):
    """Flags that override (or replace) the service file."""
    options = [
        click.option('--name', help='Container and service name'),
        click.option('--image', help='Image repository, e.g. myapp or registry/team/myapp'),
        click.option('--tag', help='Image tag'),
        click.option('--port', '-p', 'ports', multiple=True, help='Port mapping host:container (repeatable)'),
        click.option('--env-file', help='Environment file passed to the container'),
        click.option('--volume', '-v', 'volumes', multiple=True, help='Volume source:target[:ro] (repeatable)'),
        click.option('--restart', type=click.Choice([p.value for p in RestartPolicy]), help='Restart policy'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _overrides(name, image, tag, ports, env_file, volumes, restart):
    overrides = {
        'name': name,
        'image': image,
        'tag': tag,
        'env_file': env_file,
        'restart': restart,
        'ports': list(ports) or None,
        'volumes': list(volumes) or None,
    }
    return {key: value for key, value in overrides.items() if value is not None}


def load_services(ctx, overrides=None):
    """
    Loads the service file, or builds a service from flags when there is none.
    """
    path = ctx.obj['file']
    parser = ConfigParser()
    if os.path.exists(path):
        return parser.parse(path, overrides=overrides)
    if overrides and overrides.get('image'):
        return parser.from_flags(overrides, base_dir=os.getcwd())
    raise ConfigError(f"{path} not found and no --image given")


def select_services(services, names):
    if not names:
        return list(services.values())
    unknown = [n for n in names if n not in services]
    if unknown:
        raise ConfigError(f"Unknown service(s): {', '.join(unknown)}")
    return [services[n] for n in names]


def target_names(ctx, names):
    """
    Service names for stop/status/teardown: explicit names, else the service
    file, else everything tracked.
    """
    if names:
        return list(names)
    if os.path.exists(ctx.obj['file']):
        return list(load_services(ctx))
    return [handle.name for handle in ctx.obj['orchestrator'].tracker.list()]


@click.group()
@click.option('--file', '-f', default='shipctl.yml', envvar='SHIPCTL_CONFIG', help='Service file path')
@click.option('--state-dir', default='.shipctl/state', envvar='SHIPCTL_STATE_DIR', help='Where container handles are recorded')
@click.option('--docker', 'docker_bin', default='docker', envvar='SHIPCTL_DOCKER', help='Container engine executable')
@click.option('--verbose', is_flag=True, help='Log engine commands')
@click.pass_context
def cli(ctx, file, state_dir, docker_bin, verbose):
    """
    shipctl - build, ship and run a container, then keep it healthy.
    """
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)-7s %(message)s',
        datefmt='%H:%M:%S',
    )
    ctx.obj['file'] = file
    if 'orchestrator' not in ctx.obj:
        ctx.obj['orchestrator'] = LifecycleOrchestrator(EngineClient(binary=docker_bin), StateTracker(state_dir))


@cli.command()
@click.argument('services', nargs=-1)
@service_options
@click.option('--force', is_flag=True, help='Tear down any existing container first')
@click.option('--watch', is_flag=True, help='Keep probing after the service is healthy')
@click.pass_context
@handle_errors
def deploy(ctx, services, name, image, tag, ports, env_file, volumes, restart, force, watch):
    """Build, tag, push and run services until they report healthy."""
    orchestrator = ctx.obj['orchestrator']
    overrides = _overrides(name, image, tag, ports, env_file, volumes, restart)
    specs = select_services(load_services(ctx, overrides), services)
    if watch and len(specs) != 1:
        raise ConfigError("--watch needs exactly one service")

    for spec in specs:
        handle = orchestrator.deploy(spec, force=force)
        click.echo(f"{handle.name}: {handle.state.value} ({handle.id or 'no id'})")

    if watch:
        click.echo("Watching... Press Ctrl+C to stop.")
        orchestrator.supervise(specs[0])


@cli.command()
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def stop(ctx, services):
    """Stop services, keeping their containers for the next deploy."""
    orchestrator = ctx.obj['orchestrator']
    for name in target_names(ctx, services):
        handle = orchestrator.stop(name)
        state = handle.state.value if handle else "absent"
        click.echo(f"{name}: {state}")


@cli.command()
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def teardown(ctx, services):
    """Stop and remove service containers."""
    orchestrator = ctx.obj['orchestrator']
    for name in target_names(ctx, services):
        orchestrator.remove(name)
        click.echo(f"{name}: absent")


@cli.command()
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def status(ctx, services):
    """Show service states."""
    orchestrator = ctx.obj['orchestrator']
    click.echo(f"{'SERVICE':20} {'STATE':10}")
    click.echo("-" * 31)
    for name in target_names(ctx, services):
        click.echo(f"{name:20} {orchestrator.status(name).value:10}")


@cli.command()
@click.argument('service')
@click.option('--tail', type=int, help='Only the last N lines')
@click.pass_context
@handle_errors
def logs(ctx, service, tail):
    """Print a service's container logs."""
    click.echo(ctx.obj['orchestrator'].logs(service, tail=tail), nl=False)


def _interrupt_on_sigterm(signum, frame):
    raise KeyboardInterrupt


def main():
    """
    Main entry point for the CLI.
    """
    signal.signal(signal.SIGTERM, _interrupt_on_sigterm)
    cli(obj={})


if __name__ == '__main__':
    main()
