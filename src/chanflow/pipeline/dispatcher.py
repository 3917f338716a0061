"""
Task dispatching.

For every invocation produced by the input binder the dispatcher stages the
input files, renders the script, consults the store directory and the task
cache, submits the task to its executor, applies the exit status and error
strategy policy, and hands the outputs to the output binder.
"""

import logging
import shutil
import threading
import time
import traceback
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import click

from .cache import CacheEntry, StoreDir, TaskCache, compute_fingerprint, describe_input
from .errors import TaskFailedError
from .executors import ExecutionContext, ExecutionOutcome, TaskExecutor, TaskHandle
from .outputs import OutputBinder
from .process import (
    ErrorStrategy,
    InputKind,
    NativeBody,
    ProcessDefinition,
    format_template_value,
    substitute,
)
from .share import ShareStateManager
from .staging import resolve_stage_names, resolve_stage_pattern, stage_files

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    """
    Status of a task invocation.
    """

    SUCCESS = "success"
    CACHED = "cached"
    STORED = "stored"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskResult:
    """
    Result of a task invocation.
    """

    task_id: str
    status: TaskStatus
    outputs: List[Any] = field(default_factory=list)
    exit_status: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    fingerprint: Optional[str] = None
    workdir: Optional[Path] = None
    error_message: Optional[str] = None
    execution_time: float = 0.0


@dataclass
class TaskInvocation:
    """
    One firing of a process.

    ``binding`` holds the values received from the input channels; the
    remaining fields are filled in while the task is prepared.
    """

    process: ProcessDefinition
    index: int
    binding: Dict[str, Any]
    variables: Dict[str, Any] = field(default_factory=dict)
    staged: Dict[str, Tuple[List[Path], List[str]]] = field(default_factory=dict)
    script: str = ""
    fingerprint: Optional[str] = None
    workdir: Optional[Path] = None

    @property
    def task_id(self) -> str:
        return f"{self.process.name} ({self.index})"


class TaskDispatcher:
    """
    Runs the invocations of one process.
    """

    def __init__(
        self,
        process: ProcessDefinition,
        outputs: OutputBinder,
        cache: TaskCache,
        executor: TaskExecutor,
        work_dir: Path,
        abort_event: Optional[threading.Event] = None,
        share: Optional[ShareStateManager] = None,
    ):
        self.process = process
        self.outputs = outputs
        self.cache = cache
        self.executor = executor
        self.work_dir = Path(work_dir)
        self.share = share
        self._abort = abort_event or threading.Event()
        self._handles: Dict[int, TaskHandle] = {}
        self._handles_lock = threading.Lock()

    @property
    def directives(self):
        return self.process.directives

    def dispatch(self, invocation: TaskInvocation) -> TaskResult:
        """
        Run one invocation and return its result.

        Failures rejected by the ``ignore`` error strategy are returned as
        FAILED results; every other error propagates.
        """
        if self._abort.is_set():
            return self._skipped(invocation)

        start_time = time.time()
        try:
            result = self._dispatch(invocation)
        except TaskFailedError as e:
            if self.directives.error_strategy != ErrorStrategy.IGNORE:
                raise
            logger.warning(f"Task '{invocation.task_id}' failed, ignoring: {e}")
            result = TaskResult(
                task_id=invocation.task_id,
                status=TaskStatus.FAILED,
                exit_status=e.exit_status,
                stdout=e.stdout,
                stderr=e.stderr,
                fingerprint=invocation.fingerprint,
                workdir=invocation.workdir,
                error_message=str(e),
            )
        result.execution_time = time.time() - start_time
        return result

    def prepare(self, invocation: TaskInvocation) -> None:
        """
        Resolve staged names, render the script and compute the fingerprint.
        """
        process = self.process
        flat = process.flat_inputs
        variables: Dict[str, Any] = {}

        for spec in flat:
            if spec.kind != InputKind.FILE:
                variables[spec.name] = invocation.binding[spec.name]

        for spec in flat:
            if spec.kind != InputKind.FILE:
                continue
            value = invocation.binding[spec.name]
            items = value if isinstance(value, list) else [value]
            pattern = resolve_stage_pattern(spec.stage_as, variables)
            names = resolve_stage_names(items, pattern)
            invocation.staged[spec.name] = (items, names)
            variables[spec.name] = names if isinstance(value, list) else names[0]

        if self.share is not None:
            variables.update(self.share.snapshot())

        invocation.variables = variables
        invocation.script = process.body.render(variables)
        invocation.fingerprint = compute_fingerprint(
            process.name,
            invocation.script,
            [(spec, invocation.binding[spec.name]) for spec in flat],
            self.directives.cache,
        )

        if invocation.fingerprint and self.share is None:
            fp = invocation.fingerprint
            invocation.workdir = self.work_dir / fp[:2] / fp[2:]
        else:
            token = uuid.uuid4().hex
            invocation.workdir = self.work_dir / token[:2] / token[2:]

    def _dispatch(self, invocation: TaskInvocation) -> TaskResult:
        self.prepare(invocation)
        use_cache = invocation.fingerprint is not None and self.share is None
        lock = self.cache.locked(invocation.fingerprint) if use_cache else nullcontext()

        with lock:
            # identical invocations wait on the lock and must not start after a failure
            if self._abort.is_set():
                return self._skipped(invocation)
            try:
                return self._dispatch_locked(invocation, use_cache)
            except TaskFailedError:
                if self.directives.error_strategy != ErrorStrategy.IGNORE:
                    self._abort.set()
                raise
            except Exception:
                self._abort.set()
                raise

    def _skipped(self, invocation: TaskInvocation, **kwargs) -> TaskResult:
        return TaskResult(
            task_id=invocation.task_id,
            status=TaskStatus.SKIPPED,
            fingerprint=invocation.fingerprint,
            workdir=invocation.workdir,
            error_message="Pipeline aborted",
            **kwargs,
        )

    def _dispatch_locked(self, invocation: TaskInvocation, use_cache: bool) -> TaskResult:
        if self.directives.store_dir is not None:
            result = self._from_store_dir(invocation)
            if result is not None:
                return result

        if use_cache:
            entry = self.cache.lookup(invocation.fingerprint)
            if entry is not None:
                logger.info(
                    f"[{invocation.fingerprint[:8]}] Cached task '{invocation.task_id}'"
                )
                values = entry.output_values()
                self.outputs.emit(values)
                return TaskResult(
                    task_id=invocation.task_id,
                    status=TaskStatus.CACHED,
                    outputs=values,
                    exit_status=entry.exit_status,
                    stdout=entry.stdout,
                    fingerprint=invocation.fingerprint,
                    workdir=entry.workdir,
                )

        return self._execute(invocation, use_cache)

    def _store_dir(self, invocation: TaskInvocation) -> StoreDir:
        path = substitute(str(self.directives.store_dir), invocation.variables)
        return StoreDir(Path(path))

    def _from_store_dir(self, invocation: TaskInvocation) -> Optional[TaskResult]:
        store = self._store_dir(invocation)
        if not store.has_outputs(self.outputs.file_patterns(invocation.variables)):
            return None

        logger.info(f"Skipping task '{invocation.task_id}', outputs found in {store.path}")
        values = self.outputs.collect(invocation.variables, "", store.path)
        self.outputs.emit(values)
        return TaskResult(
            task_id=invocation.task_id,
            status=TaskStatus.STORED,
            outputs=values,
            fingerprint=invocation.fingerprint,
            workdir=store.path,
        )

    def _prepare_workdir(self, invocation: TaskInvocation) -> Path:
        workdir = invocation.workdir
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True)
        for spec_name, (items, names) in invocation.staged.items():
            staged = stage_files(workdir, items, names)
            # native bodies read the absolute staged paths
            if self.process.body.is_native:
                value = invocation.binding[spec_name]
                invocation.variables[spec_name] = (
                    staged if isinstance(value, list) else staged[0]
                )
        return workdir

    def _execute(self, invocation: TaskInvocation, use_cache: bool) -> TaskResult:
        workdir = self._prepare_workdir(invocation)
        if self._abort.is_set():
            return self._skipped(invocation)
        logger.info(
            f"[{(invocation.fingerprint or workdir.name)[:8]}] "
            f"Submitted task '{invocation.task_id}'"
        )

        if isinstance(self.process.body, NativeBody):
            outcome = self._run_native(invocation)
        else:
            outcome = self._run_script(invocation)

        stdout = outcome.stdout or ""
        stderr = outcome.stderr or ""
        if outcome.exit_status not in self.directives.valid_exit_status:
            if self._abort.is_set():
                return self._skipped(invocation, exit_status=outcome.exit_status)
            raise TaskFailedError(
                f"Task '{invocation.task_id}' terminated with exit status "
                f"{outcome.exit_status}",
                process=self.process.name,
                exit_status=outcome.exit_status,
                fingerprint=invocation.fingerprint,
                workdir=workdir,
                stdout=stdout,
                stderr=stderr,
            )

        if self.directives.echo and stdout:
            click.echo(stdout, nl=not stdout.endswith("\n"))

        values = self.outputs.collect(invocation.variables, stdout, workdir)

        if self.directives.store_dir is not None:
            store = self._store_dir(invocation)
            store.publish(self.outputs.files(values), workdir)
            values = self.outputs.collect(invocation.variables, stdout, store.path)

        if self.share is not None:
            self.share.update(invocation.variables)

        if use_cache:
            self.cache.store(
                CacheEntry.create(
                    fingerprint=invocation.fingerprint,
                    process=self.process.name,
                    outputs=values,
                    exit_status=outcome.exit_status,
                    script=invocation.script,
                    inputs=self._input_descriptors(invocation),
                    stdout=stdout,
                    workdir=workdir,
                )
            )

        self.outputs.emit(values)
        logger.info(f"Task '{invocation.task_id}' completed successfully")
        return TaskResult(
            task_id=invocation.task_id,
            status=TaskStatus.SUCCESS,
            outputs=values,
            exit_status=outcome.exit_status,
            stdout=stdout,
            stderr=stderr,
            fingerprint=invocation.fingerprint,
            workdir=workdir,
        )

    def _input_descriptors(self, invocation: TaskInvocation) -> List[Any]:
        return [
            [
                spec.name,
                describe_input(
                    spec, invocation.binding[spec.name], self.directives.cache
                ),
            ]
            for spec in self.process.flat_inputs
        ]

    def _environment(self, invocation: TaskInvocation) -> Dict[str, str]:
        return {
            spec.name: format_template_value(invocation.variables[spec.name])
            for spec in self.process.flat_inputs
            if spec.kind == InputKind.ENV
        }

    def _stdin(self, invocation: TaskInvocation) -> Optional[bytes]:
        for spec in self.process.flat_inputs:
            if spec.kind != InputKind.STDIN:
                continue
            value = invocation.binding[spec.name]
            if isinstance(value, Path):
                return value.read_bytes()
            if isinstance(value, bytes):
                return value
            return format_template_value(value).encode("utf-8")
        return None

    def _run_script(self, invocation: TaskInvocation) -> ExecutionOutcome:
        context = ExecutionContext(
            task_id=invocation.task_id,
            workdir=invocation.workdir,
            script=invocation.script,
            environment=self._environment(invocation),
            stdin=self._stdin(invocation),
        )
        handle = self.executor.submit(context)
        with self._handles_lock:
            self._handles[handle.handle_id] = handle
        try:
            return self.executor.wait(handle)
        finally:
            with self._handles_lock:
                self._handles.pop(handle.handle_id, None)

    def _run_native(self, invocation: TaskInvocation) -> ExecutionOutcome:
        scope = dict(invocation.variables)
        scope.setdefault("workdir", invocation.workdir)
        try:
            returned = self.process.body.function(scope)
        except Exception:
            logger.debug(f"Native task '{invocation.task_id}' raised", exc_info=True)
            return ExecutionOutcome(exit_status=1, stderr=traceback.format_exc())

        stdout = ""
        if isinstance(returned, Mapping):
            scope.update(returned)
        elif isinstance(returned, str):
            stdout = returned
        invocation.variables = scope
        return ExecutionOutcome(exit_status=0, stdout=stdout)

    def cancel_all(self) -> None:
        """
        Cancel every task currently running on the executor.
        """
        with self._handles_lock:
            handles = list(self._handles.values())
        for handle in handles:
            self.executor.cancel(handle)
