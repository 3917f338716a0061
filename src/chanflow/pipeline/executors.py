"""
Execution backends.

The engine talks to backends through a narrow contract: ``submit`` a task
context, ``wait`` for its outcome, ``cancel`` it. Local, grid and cloud
backends are interchangeable implementations of ``TaskExecutor``.
"""

import itertools
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

logger = logging.getLogger(__name__)

SCRIPT_FILE = ".command.sh"
STDOUT_FILE = ".command.out"
STDERR_FILE = ".command.err"
EXIT_FILE = ".exitcode"


@dataclass
class ExecutionContext:
    """
    Everything a backend needs to run one task.
    """

    task_id: str
    workdir: Path
    script: str
    environment: Dict[str, str] = field(default_factory=dict)
    stdin: Optional[bytes] = None


@dataclass
class ExecutionOutcome:
    exit_status: int
    stdout: str = ""
    stderr: Optional[str] = None


_handle_ids = itertools.count(1)


@dataclass
class TaskHandle:
    """
    Reference to a submitted task, owned by the executor that created it.
    """

    context: ExecutionContext
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    native: Any = None
    cancelled: bool = False


class TaskExecutor(ABC):
    """
    Base class for execution backends.
    """

    name = "abstract"

    @abstractmethod
    def submit(self, context: ExecutionContext) -> TaskHandle:
        """
        Start the task described by ``context`` and return its handle.
        """
        pass

    @abstractmethod
    def wait(self, handle: TaskHandle) -> ExecutionOutcome:
        """
        Block until the task ends and return its outcome.
        """
        pass

    @abstractmethod
    def cancel(self, handle: TaskHandle) -> None:
        pass

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


class LocalExecutor(TaskExecutor):
    """
    Runs task scripts as child processes of the pipeline.

    The script, captured output and exit code are written into the task
    work directory.
    """

    name = "local"

    def __init__(self, shell: str = "bash"):
        self.shell = shell

    def submit(self, context: ExecutionContext) -> TaskHandle:
        workdir = context.workdir
        workdir.mkdir(parents=True, exist_ok=True)
        script_file = workdir / SCRIPT_FILE
        script_file.write_text(context.script, encoding="utf-8")

        env = dict(os.environ)
        env.update(context.environment)

        process = subprocess.Popen(
            [self.shell, SCRIPT_FILE],
            cwd=workdir,
            env=env,
            stdin=subprocess.PIPE if context.stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        logger.debug(f"Submitted task '{context.task_id}' as pid {process.pid}")
        return TaskHandle(context=context, native=process)

    def wait(self, handle: TaskHandle) -> ExecutionOutcome:
        process: subprocess.Popen = handle.native
        out, err = process.communicate(input=handle.context.stdin)
        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")

        workdir = handle.context.workdir
        (workdir / STDOUT_FILE).write_text(stdout, encoding="utf-8")
        (workdir / STDERR_FILE).write_text(stderr, encoding="utf-8")
        (workdir / EXIT_FILE).write_text(str(process.returncode), encoding="utf-8")

        return ExecutionOutcome(
            exit_status=process.returncode, stdout=stdout, stderr=stderr or None
        )

    def cancel(self, handle: TaskHandle) -> None:
        process: subprocess.Popen = handle.native
        handle.cancelled = True
        if process is not None and process.poll() is None:
            logger.info(f"Killing task '{handle.context.task_id}' (pid {process.pid})")
            process.terminate()


class ExecutorRegistry:
    """
    Registry of executor classes by name.
    """

    _executors: Dict[str, Type[TaskExecutor]] = {}
    _default: Optional[str] = None

    @classmethod
    def register(
        cls,
        name: str,
        executor_class: Type[TaskExecutor],
        is_default: bool = False,
    ) -> None:
        """
        Register an executor class.

        Args:
            name: Name used by the ``executor`` directive
            executor_class: Class inheriting from TaskExecutor
            is_default: Whether to use it when no name is given
        """
        if not issubclass(executor_class, TaskExecutor):
            raise ValueError(
                f"Executor class must inherit from TaskExecutor: {executor_class}"
            )
        cls._executors[name] = executor_class
        if is_default:
            cls._default = name
        logger.debug(f"Registered executor: {name} -> {executor_class.__name__}")

    @classmethod
    def get_available_types(cls) -> List[str]:
        return list(cls._executors.keys())

    @classmethod
    def default_name(cls) -> Optional[str]:
        return cls._default

    @classmethod
    def create(cls, name: Optional[str] = None, **kwargs: Any) -> TaskExecutor:
        """
        Instantiate the executor registered under ``name``.
        """
        name = name or cls._default
        if name not in cls._executors:
            raise ValueError(
                f"Unknown executor: {name}. "
                f"Available: {', '.join(cls.get_available_types()) or 'none'}"
            )
        return cls._executors[name](**kwargs)


ExecutorRegistry.register("local", LocalExecutor, is_default=True)
