"""
chanflow dataflow engine.

Processes exchange data through channels; the engine fires a task whenever a
process has a complete set of inputs, caches task results, and publishes
task outputs to downstream processes.

Submodules:
- channel: channels and the channel registry
- process: process definitions, port specs and directives
- binder: firing rules and input binding
- staging: staged file names and output file matching
- cache: fingerprints, task cache and store directories
- executors: execution backends
- dispatcher: task dispatching and error policy
- outputs: output binding
- share: shared state of serialized processes
- config: directive configuration files
- runner: pipeline execution
"""

from .binder import InputBinder
from .cache import CacheEntry, StoreDir, TaskCache, compute_fingerprint
from .channel import END_OF_STREAM, Channel, ChannelRegistry
from .config import ProcessConfig, load_process_config
from .dispatcher import TaskDispatcher, TaskInvocation, TaskResult, TaskStatus
from .errors import (
    BindingError,
    ChanflowError,
    NotificationError,
    PipelineAbortedError,
    ProcessDefinitionError,
    StagingError,
    TaskFailedError,
)
from .executors import (
    ExecutionContext,
    ExecutionOutcome,
    ExecutorRegistry,
    LocalExecutor,
    TaskExecutor,
    TaskHandle,
)
from .outputs import OutputBinder
from .process import (
    Directives,
    ErrorStrategy,
    InputKind,
    InputSpec,
    NativeBody,
    OutputKind,
    OutputSpec,
    ProcessDefinition,
    ShareSpec,
    ShellScript,
    TaskBody,
)
from .runner import Pipeline, ProcessRunner
from .share import ShareStateManager
from .staging import match_output_files, resolve_stage_names

__all__ = [
    "Channel",
    "ChannelRegistry",
    "END_OF_STREAM",
    "Directives",
    "ErrorStrategy",
    "InputKind",
    "InputSpec",
    "OutputKind",
    "OutputSpec",
    "ShareSpec",
    "TaskBody",
    "ShellScript",
    "NativeBody",
    "ProcessDefinition",
    "InputBinder",
    "resolve_stage_names",
    "match_output_files",
    "CacheEntry",
    "TaskCache",
    "StoreDir",
    "compute_fingerprint",
    "ExecutionContext",
    "ExecutionOutcome",
    "TaskHandle",
    "TaskExecutor",
    "LocalExecutor",
    "ExecutorRegistry",
    "TaskDispatcher",
    "TaskInvocation",
    "TaskResult",
    "TaskStatus",
    "OutputBinder",
    "ShareStateManager",
    "ProcessConfig",
    "load_process_config",
    "Pipeline",
    "ProcessRunner",
    "ChanflowError",
    "ProcessDefinitionError",
    "BindingError",
    "StagingError",
    "TaskFailedError",
    "PipelineAbortedError",
    "NotificationError",
]
