import dataclasses
import functools
from collections.abc import Callable, Collection
from typing import Any

import click

from clusterreg._cogs.configs import configuration, connections
from clusterreg._cogs.structs import credentials, references
from clusterreg._core.actions import loggers
from clusterreg._core.reactor import running


@dataclasses.dataclass()
class CLIControls:
    """ The controls of the controller, which are impossible to pass via CLI. """
    stop_flag: Any = None  # asyncio.Event, but created in the controller's loop.
    settings: configuration.OperatorSettings | None = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: bool | None = False,
                log_refkey: str | None = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


@click.version_option(prog_name='clusterreg')
@click.group(name='clusterreg', context_settings=dict(
    auto_envvar_prefix='CLUSTERREG',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-c', '--config', 'config_path', type=click.Path(dir_okay=False), required=True)
@click.option('-n', '--namespace', 'namespaces', multiple=True)
@click.option('-w', '--workers', 'worker_limit', type=click.IntRange(min=1))
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        config_path: str,
        namespaces: Collection[references.NamespacePattern],
        worker_limit: int | None,
) -> None:
    """ Start the controller process and reconcile the registered clusters. """
    try:
        config = connections.load_controller_config(config_path)
    except (OSError, connections.ConfigError, credentials.LoginError) as e:
        raise click.UsageError(f"Cannot load the config: {e}") from e

    settings = __controls.settings if __controls.settings is not None else configuration.OperatorSettings()
    if worker_limit is not None:
        settings.queueing.worker_limit = worker_limit

    return running.run(
        config=config,
        settings=settings,
        namespaces=namespaces,
        stop_flag=__controls.stop_flag,
    )


@main.command()
@logging_options
@click.option('-c', '--config', 'config_path', type=click.Path(dir_okay=False), required=True)
def check(config_path: str) -> None:
    """ Validate the config file and print the configured API servers. """
    try:
        config = connections.load_controller_config(config_path)
    except (OSError, connections.ConfigError, credentials.LoginError) as e:
        raise click.UsageError(f"Cannot load the config: {e}") from e

    click.echo(f"compute: {config.compute.server}")
    for hub in config.hubs:
        click.echo(f"hub {hub.name}: {hub.connection.server} for {', '.join(map(str, hub.namespaces))}")
    click.echo(f"namespaces: {', '.join(map(str, config.namespaces))}")
