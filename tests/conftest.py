"""
Fixtures and test configuration for the chanflow test suite.
"""

import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import List

import pytest

from chanflow.pipeline import (
    ExecutionContext,
    ExecutionOutcome,
    Pipeline,
    TaskExecutor,
    TaskHandle,
)
from chanflow.settings import Settings

requires_bash = pytest.mark.skipif(
    shutil.which("bash") is None, reason="bash is not available"
)


class RecordingExecutor(TaskExecutor):
    """
    Executor that never spawns processes.

    It records every submitted context and answers with a fixed exit status.
    ``outputs`` maps file names to contents written into the work directory,
    so that file outputs can be collected.
    """

    name = "recording"

    def __init__(self, exit_status=0, stdout="", outputs=None, delay=0.0):
        self.exit_status = exit_status
        self.stdout = stdout
        self.outputs = outputs or {}
        self.delay = delay
        self.submitted: List[ExecutionContext] = []
        self.cancelled: List[TaskHandle] = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def submit(self, context: ExecutionContext) -> TaskHandle:
        with self._lock:
            self.submitted.append(context)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        for name, content in self.outputs.items():
            (context.workdir / name).write_text(content)
        return TaskHandle(context=context)

    def wait(self, handle: TaskHandle) -> ExecutionOutcome:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.running -= 1
        status = self.exit_status
        if callable(status):
            status = status(handle.context)
        return ExecutionOutcome(
            exit_status=status, stdout=self.stdout, stderr="boom" if status else None
        )

    def cancel(self, handle: TaskHandle) -> None:
        handle.cancelled = True
        self.cancelled.append(handle)

    @property
    def scripts(self) -> List[str]:
        return [c.script for c in self.submitted]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def test_settings(temp_dir):
    """Create test settings with temporary directories."""
    settings = Settings(
        work_dir=temp_dir / "work",
        cache_dir=temp_dir / "work" / ".cache",
        max_workers=2,
        log_level="DEBUG",
    )
    settings.create_directories()
    return settings


@pytest.fixture
def recording_executor():
    """Executor recording submissions, always succeeding."""
    return RecordingExecutor()


@pytest.fixture
def make_pipeline(test_settings):
    """Factory for pipelines whose tasks run on the given executor."""

    def _make(executor=None, name="test", **kwargs):
        executors = {"local": executor} if executor is not None else None
        return Pipeline(name, settings=test_settings, executors=executors, **kwargs)

    return _make


@pytest.fixture
def input_files(temp_dir):
    """Three small input files."""
    data_dir = temp_dir / "data"
    data_dir.mkdir()
    files = []
    for i, content in enumerate(["AAA", "CCC", "GGG"], start=1):
        path = data_dir / f"sample{i}.fa"
        path.write_text(f">seq{i}\n{content}\n")
        files.append(path)
    return files
