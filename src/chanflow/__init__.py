"""
chanflow: a dataflow pipeline engine for scientific workflows.

Subpackages
-----------
- pipeline:    channels, processes, caching and task execution
- plugins:     CLI command plugins
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__: str = version(__name__)
except PackageNotFoundError:  # local editable install
    __version__ = "0.0.0-dev"

from .pipeline import (
    Channel,
    Directives,
    InputSpec,
    OutputSpec,
    Pipeline,
    PipelineAbortedError,
    ProcessDefinition,
    ShareSpec,
)

__all__ = [
    "Channel",
    "Directives",
    "InputSpec",
    "OutputSpec",
    "Pipeline",
    "PipelineAbortedError",
    "ProcessDefinition",
    "ShareSpec",
]
