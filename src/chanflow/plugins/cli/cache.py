"""
CLI commands: cache list / cache clean
"""

import logging

import click

from chanflow.pipeline import TaskCache
from chanflow.settings import settings

logger = logging.getLogger(__name__)


def _task_cache(ctx) -> TaskCache:
    current = (ctx.obj or {}).get("settings", settings)
    return TaskCache(current.cache_dir)


@click.group("cache")
def cli():
    """
    Inspect and clean the task cache.
    """
    pass


@cli.command("list")
@click.option("--process", "process_name", help="Only show entries of this process")
@click.pass_context
def list_entries(ctx, process_name):
    """
    List cached task results.
    """
    entries = _task_cache(ctx).entries()
    if process_name:
        entries = [e for e in entries if e.process == process_name]

    if not entries:
        click.echo("No cache entries found")
        return

    for entry in entries:
        created = entry.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{entry.fingerprint[:12]}  {created}  {entry.process}  "
            f"exit={entry.exit_status}  {entry.workdir or ''}"
        )
    click.echo(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")


@cli.command("clean")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clean(ctx, yes):
    """
    Delete every cache entry. Task work directories are kept.
    """
    cache = _task_cache(ctx)
    if not yes and not click.confirm(f"Remove all cache entries in {cache.cache_dir}?"):
        click.echo("Aborted")
        return
    removed = cache.clear()
    logger.info(f"Removed {removed} cache entries from {cache.cache_dir}")
    click.echo(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")
