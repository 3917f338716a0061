"""
CLI command: run

Loads a pipeline from a Python file or module and runs it.
"""

import importlib
import importlib.util
import logging
import pathlib
from types import ModuleType
from typing import Optional

import click

from chanflow.pipeline import (
    Pipeline,
    PipelineAbortedError,
    TaskStatus,
    load_process_config,
)
from chanflow.settings import Settings, settings

logger = logging.getLogger(__name__)

DEFAULT_ATTRIBUTES = ("pipeline", "build_pipeline")


def _import_target(module_ref: str) -> ModuleType:
    path = pathlib.Path(module_ref)
    if path.suffix == ".py":
        if not path.exists():
            raise FileNotFoundError(f"Pipeline file not found: {path}")
        spec = importlib.util.spec_from_file_location(path.stem, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return importlib.import_module(module_ref)


def load_pipeline(target: str, run_settings: Settings) -> Pipeline:
    """
    Resolve a ``file.py[:attr]`` or ``package.module[:attr]`` reference.

    The attribute can be a Pipeline or a factory called with the settings.
    Without an attribute, ``pipeline`` then ``build_pipeline`` are tried.
    """
    module_ref, _, attribute = target.partition(":")
    module = _import_target(module_ref)

    candidates = (attribute,) if attribute else DEFAULT_ATTRIBUTES
    for name in candidates:
        obj = getattr(module, name, None)
        if obj is None:
            continue
        if isinstance(obj, Pipeline):
            return obj
        if callable(obj):
            pipeline = obj(run_settings)
            if not isinstance(pipeline, Pipeline):
                raise TypeError(f"'{name}' in {module_ref} did not return a Pipeline")
            return pipeline

    raise AttributeError(
        f"No pipeline found in {module_ref} (looked for: {', '.join(candidates)})"
    )


@click.command("run")
@click.argument("target")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path),
    help="YAML file with process directives",
)
@click.option("--max-workers", type=int, help="Maximum number of parallel tasks")
@click.pass_context
def cli(
    ctx,
    target: str,
    config_file: Optional[pathlib.Path],
    max_workers: Optional[int],
):
    """
    Run a pipeline.

    Examples:
        chanflow run pipelines/align.py
        chanflow run mypackage.pipelines:build_pipeline --max-workers 8
        chanflow run align.py --config process.yaml
    """
    run_settings = (ctx.obj or {}).get("settings", settings)
    if max_workers:
        run_settings.max_workers = max_workers

    try:
        pipeline = load_pipeline(target, run_settings)
        if config_file is not None:
            pipeline.configure(load_process_config(config_file))
    except (ImportError, AttributeError, FileNotFoundError, TypeError, ValueError) as e:
        logger.error(f"Failed to load pipeline '{target}': {e}")
        raise click.ClickException(str(e))

    click.echo(
        f"Running pipeline '{pipeline.name}' with {len(pipeline.processes)} process(es)"
    )

    try:
        results = pipeline.run()
    except PipelineAbortedError as e:
        click.echo(e.report(), err=True)
        ctx.exit(1)
        return

    click.echo("\nExecution Summary:")
    for process_name, process_results in results.items():
        counts = {}
        for result in process_results:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        details = ", ".join(f"{k}: {v}" for k, v in sorted(counts.items())) or "no tasks"
        click.echo(f"  {process_name}: {details}")

    failed = sum(
        1 for rs in results.values() for r in rs if r.status == TaskStatus.FAILED
    )
    if failed:
        click.echo(f"\n{failed} task(s) failed and were ignored")
