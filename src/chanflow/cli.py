"""
Core chanflow CLI: dynamically loads commands from plugins/cli.
"""

import importlib
import logging
import pathlib
import pkgutil

import click

from chanflow.settings import settings

# Logging configuration
logger = logging.getLogger("chanflow")
handler = logging.StreamHandler()
formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(getattr(logging, settings.log_level.upper()))


@click.group()
@click.option("--log-level", default=settings.log_level, help="Set logging level")
@click.option(
    "--work-dir",
    type=click.Path(file_okay=False, path_type=pathlib.Path),
    default=None,
    help="Root directory of task work directories",
)
@click.pass_context
def main(ctx, log_level, work_dir):
    """
    chanflow dataflow pipeline engine
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level

    logger.setLevel(getattr(logging, log_level.upper()))

    settings.log_level = log_level
    if work_dir is not None:
        settings.work_dir = work_dir
        settings.cache_dir = work_dir / ".cache"
    ctx.obj["settings"] = settings


def load_commands():
    """
    Auto-discover and register click commands from chanflow/plugins/cli/*.py
    Each plugin module must define a top-level `cli` click.Command.
    """
    plugins_path = pathlib.Path(__file__).parent / "plugins" / "cli"
    package = "chanflow.plugins.cli"
    for _, module_name, _ in pkgutil.iter_modules([str(plugins_path)]):
        full_name = f"{package}.{module_name}"
        try:
            module = importlib.import_module(full_name)
            cmd = getattr(module, "cli", None)
            if isinstance(cmd, click.Command):
                main.add_command(cmd)
        except Exception as e:
            logger.error(f"Failed to load plugin {full_name}: {e}")


# Load all plugin commands
load_commands()

if __name__ == "__main__":
    main()
