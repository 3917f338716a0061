"""
CLI command: info

Displays chanflow package version, registered executors and the effective
settings.
"""

import logging
from importlib.metadata import PackageNotFoundError, version

import click

from chanflow.pipeline import ExecutorRegistry
from chanflow.settings import settings

# Configure module-level logger
logger = logging.getLogger("chanflow.cli.info")


@click.command("info")
@click.pass_context
def cli(ctx) -> None:
    """
    Show package metadata, executors and settings.
    """
    # Retrieve package version, fallback if not installed
    try:
        pkg_version = version("chanflow")
        logger.debug("Retrieved package version: %s", pkg_version)
    except PackageNotFoundError:
        pkg_version = "0.0.0-dev"
        logger.warning(
            "Package 'chanflow' not found; using development version placeholder."
        )

    current = (ctx.obj or {}).get("settings", settings)

    click.echo(f"chanflow version: {pkg_version}")

    click.echo("\nAvailable executors:")
    default = ExecutorRegistry.default_name()
    for name in ExecutorRegistry.get_available_types():
        marker = " (default)" if name == default else ""
        click.echo(f"  - {name}{marker}")

    click.echo("\nSettings:")
    click.echo(f"  work_dir: {current.work_dir}")
    click.echo(f"  cache_dir: {current.cache_dir}")
    click.echo(f"  max_workers: {current.max_workers}")
    click.echo(f"  default_executor: {current.default_executor}")
