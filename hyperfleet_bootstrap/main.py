import logging
import sys

import click

from hyperfleet_bootstrap.agent import BootstrapAgent
from hyperfleet_bootstrap.config import AgentSettings, ConfigError, load_runner_config
from hyperfleet_bootstrap.logging_config import configure_logging
from hyperfleet_bootstrap.system import (
    CommandRunner,
    FileSystem,
    HttpClient,
    SystemOperations,
)


logger = logging.getLogger(__name__)


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Runner configuration written by cloud-init.",
)
@click.option("--log-level", default=None, help="Override the agent log level.")
def cli(config_path: str | None, log_level: str | None) -> None:
    """Register a one-shot CI runner, run it, then power the VM off."""
    settings = AgentSettings()
    configure_logging(log_level or settings.log_level)
    path = config_path or settings.config_path
    try:
        config = load_runner_config(path)
    except ConfigError as exc:
        logger.error("failed to load config path=%s: %s", path, exc)
        sys.exit(1)

    http = HttpClient(timeout_sec=settings.http_timeout_sec)
    agent = BootstrapAgent(
        http=http,
        fs=FileSystem(),
        commands=CommandRunner(),
        system=SystemOperations(),
        cleanup_delay_sec=settings.cleanup_delay_sec,
        command_timeout_sec=settings.command_timeout_sec,
        status_timeout_sec=settings.status_timeout_sec,
    )
    try:
        code = agent.run(config)
    finally:
        http.close()
    sys.exit(code)


if __name__ == "__main__":
    cli()
