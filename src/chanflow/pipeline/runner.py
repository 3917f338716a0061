"""
Pipeline execution.

Each process runs its own matching loop in a dedicated thread. Invocations
are executed on a shared thread pool, except for processes with a share
block whose invocations run one at a time from the matching loop.

A fatal error aborts the whole pipeline: queued invocations are cancelled,
running tasks are killed and every channel is closed so that waiting loops
terminate.
"""

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..notify import Notifier, build_completion_notification
from ..settings import Settings
from ..settings import settings as default_settings
from .binder import InputBinder
from .cache import TaskCache
from .channel import Channel, ChannelRegistry
from .config import ProcessConfig
from .dispatcher import TaskDispatcher, TaskInvocation, TaskResult, TaskStatus
from .errors import NotificationError, PipelineAbortedError, TaskFailedError
from .executors import ExecutorRegistry, TaskExecutor
from .outputs import OutputBinder
from .process import DEFAULT_EXECUTOR, ProcessDefinition
from .share import ShareStateManager

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Drives the invocations of one process.
    """

    def __init__(
        self, pipeline: "Pipeline", process: ProcessDefinition, pool: ThreadPoolExecutor
    ):
        self.pipeline = pipeline
        self.process = process
        self.pool = pool
        self.binder = InputBinder(process, pipeline.channels)
        self.outputs = OutputBinder(process, pipeline.channels)
        self.share = (
            ShareStateManager(process, pipeline.channels, pipeline.scope)
            if process.has_shares
            else None
        )
        self.dispatcher = TaskDispatcher(
            process,
            self.outputs,
            pipeline.cache,
            pipeline.executor_for(process),
            pipeline.settings.work_dir,
            abort_event=pipeline.abort_event,
            share=self.share,
        )
        self.results: List[TaskResult] = []
        self._futures: List[Future] = []
        self._lock = threading.Lock()

    def _guarded(self, invocation: TaskInvocation) -> TaskResult:
        try:
            if self.share is not None:
                return self.share.run(self.dispatcher.dispatch, invocation)
            return self.dispatcher.dispatch(invocation)
        except Exception as e:
            self.pipeline.abort(self.process.name, e, invocation)
            return TaskResult(
                task_id=invocation.task_id,
                status=TaskStatus.FAILED,
                fingerprint=invocation.fingerprint,
                workdir=invocation.workdir,
                error_message=str(e),
            )

    def run(self) -> None:
        """
        Matching loop: bind inputs, dispatch invocations, then close outputs.
        """
        logger.info(f"Starting process '{self.process.name}'")
        try:
            for index, binding in enumerate(self.binder, start=1):
                if self.pipeline.aborted:
                    break
                invocation = TaskInvocation(self.process, index, binding)
                if self.share is not None:
                    self.results.append(self._guarded(invocation))
                    continue
                with self._lock:
                    self._futures.append(self.pool.submit(self._guarded, invocation))

            with self._lock:
                futures = list(self._futures)
            for future in futures:
                try:
                    self.results.append(future.result())
                except CancelledError:
                    continue
        except Exception as e:
            self.pipeline.abort(self.process.name, e)
        finally:
            if self.share is not None:
                self.share.finalize(emit=not self.pipeline.aborted)
            self.outputs.close()
            logger.info(
                f"Process '{self.process.name}' finished after "
                f"{len(self.results)} invocation(s)"
            )

    def cancel(self) -> None:
        """
        Cancel queued invocations, kill running tasks, unblock the loop.
        """
        with self._lock:
            futures = list(self._futures)
        for future in futures:
            future.cancel()
        self.dispatcher.cancel_all()
        self.binder.close_sources()


class Pipeline:
    """
    A set of processes connected by channels.

    Example:
        pipeline = Pipeline("demo")
        pipeline.values("shapes", ["circle", "square"])
        pipeline.add_process(ProcessDefinition(
            name="draw",
            body="echo $shapes",
            inputs=[InputSpec.val("shapes")],
            outputs=[OutputSpec.stdout(into="drawings")],
        ))
        pipeline.run()
    """

    def __init__(
        self,
        name: str = "pipeline",
        settings: Optional[Settings] = None,
        scope: Optional[Mapping[str, Any]] = None,
        executors: Optional[Mapping[str, TaskExecutor]] = None,
        config: Optional[ProcessConfig] = None,
        notifier: Optional[Notifier] = None,
        notify_to: Iterable[str] = (),
    ):
        self.name = name
        self.settings = settings or default_settings
        self.scope: Dict[str, Any] = dict(scope or {})
        self.config = config
        self.notifier = notifier
        self.notify_to = list(notify_to)
        self.channels = ChannelRegistry()
        self.processes: Dict[str, ProcessDefinition] = {}
        self.cache = TaskCache(self.settings.cache_dir)
        self.abort_event = threading.Event()
        self.execution_results: Dict[str, List[TaskResult]] = {}
        self._executors: Dict[str, TaskExecutor] = dict(executors or {})
        self._runners: List[ProcessRunner] = []
        self._failure: Optional[PipelineAbortedError] = None
        self._lock = threading.Lock()

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def channel(self, name: str, channel: Optional[Channel] = None) -> Channel:
        """
        Declare a named channel.
        """
        return self.channels.declare(name, channel)

    def values(self, name: str, items: Iterable[Any]) -> Channel:
        """
        Declare a named channel holding the given items, already closed.
        """
        return self.channels.declare(name, Channel.from_iterable(items, name=name))

    def add_process(self, process: ProcessDefinition) -> ProcessDefinition:
        if process.name in self.processes:
            raise ValueError(f"Process '{process.name}' already exists in pipeline")
        if self.config is not None:
            process = self.config.apply(process)
        self.processes[process.name] = process
        logger.debug(f"Added process '{process.name}' to pipeline '{self.name}'")
        return process

    def configure(self, config: ProcessConfig) -> None:
        """
        Apply directive configuration, including to processes already added.
        """
        self.config = config
        self.processes = {
            name: config.apply(process) for name, process in self.processes.items()
        }

    def executor_for(self, process: ProcessDefinition) -> TaskExecutor:
        if process.body.is_native:
            name = DEFAULT_EXECUTOR
        else:
            name = process.directives.executor or self.settings.default_executor
        with self._lock:
            executor = self._executors.get(name)
            if executor is None:
                kwargs = {"shell": self.settings.shell} if name == DEFAULT_EXECUTOR else {}
                executor = ExecutorRegistry.create(name, **kwargs)
                self._executors[name] = executor
            return executor

    def abort(
        self,
        process: str,
        error: BaseException,
        invocation: Optional[TaskInvocation] = None,
    ) -> None:
        """
        Stop the pipeline after a fatal error. Only the first error is kept.
        """
        with self._lock:
            if self._failure is not None:
                logger.debug(f"Pipeline already aborted, ignoring: {error}")
                return
            if isinstance(error, TaskFailedError):
                self._failure = PipelineAbortedError(
                    process,
                    error,
                    fingerprint=error.fingerprint,
                    workdir=error.workdir,
                    stdout=error.stdout,
                    stderr=error.stderr,
                )
            else:
                self._failure = PipelineAbortedError(
                    process,
                    error,
                    fingerprint=invocation.fingerprint if invocation else None,
                    workdir=invocation.workdir if invocation else None,
                )
            self.abort_event.set()
            runners = list(self._runners)

        logger.error(f"Aborting pipeline '{self.name}': {self._failure.report()}")
        for runner in runners:
            runner.cancel()
        self.channels.close_all()

    def run(self) -> Dict[str, List[TaskResult]]:
        """
        Run every process until all channels are exhausted.

        Returns:
            Task results per process name

        Raises:
            PipelineAbortedError: a task failed under the terminate strategy,
                a binding or staging error occurred, or a process names an
                unknown executor
        """
        if not self.processes:
            logger.warning(f"Pipeline '{self.name}' has no processes")
        self.settings.create_directories()
        logger.info(
            f"Starting pipeline '{self.name}' with {len(self.processes)} process(es)"
        )

        for process in self.processes.values():
            try:
                self.executor_for(process)
            except ValueError as e:
                self.abort(process.name, e)
                self._notify()
                raise self._failure from e

        with ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="chanflow-task"
        ) as pool:
            runners = [ProcessRunner(self, p, pool) for p in self.processes.values()]
            with self._lock:
                self._runners = runners
            threads = [
                threading.Thread(
                    target=runner.run, name=f"chanflow-{runner.process.name}", daemon=True
                )
                for runner in runners
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        self.execution_results = {r.process.name: r.results for r in runners}
        self._notify()

        if self._failure is not None:
            raise self._failure from self._failure.cause

        logger.info(f"Pipeline '{self.name}' completed")
        return self.execution_results

    def _notify(self) -> None:
        if self.notifier is None or not self.notify_to:
            return
        message = build_completion_notification(
            self.name,
            self.get_execution_summary(),
            self.notify_to,
            error=self._failure,
        )
        try:
            self.notifier.send_notification(message)
        except NotificationError as e:
            logger.warning(f"Failed to send completion notification: {e}")

    def get_execution_summary(self) -> Dict[str, Any]:
        """
        Get a summary of the execution results.
        """
        results = [r for rs in self.execution_results.values() for r in rs]
        if not results:
            return {"status": "not_started", "total_tasks": 0}

        status_counts: Dict[str, int] = {}
        total_time = 0.0
        for result in results:
            status = result.status.value
            status_counts[status] = status_counts.get(status, 0) + 1
            total_time += result.execution_time

        return {
            "status": "aborted" if self._failure is not None else "completed",
            "total_tasks": len(results),
            "status_counts": status_counts,
            "total_execution_time": total_time,
        }
