"""
Exception hierarchy for the dataflow engine.
"""

from pathlib import Path
from typing import Optional


class ChanflowError(Exception):
    """
    Base class for all engine errors.
    """

    pass


class ProcessDefinitionError(ChanflowError):
    """
    Raised when a process definition is inconsistent.
    """

    pass


class BindingError(ChanflowError):
    """
    Raised when an input item cannot be bound to the declared ports,
    or when a conditional script selection matches nothing.
    """

    pass


class StagingError(ChanflowError):
    """
    Raised when a declared output pattern matches no produced file.
    """

    pass


class TaskFailedError(ChanflowError):
    """
    Raised when a task terminates with an exit status outside the
    accepted set.
    """

    def __init__(
        self,
        message: str,
        process: str,
        exit_status: Optional[int] = None,
        fingerprint: Optional[str] = None,
        workdir: Optional[Path] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.process = process
        self.exit_status = exit_status
        self.fingerprint = fingerprint
        self.workdir = workdir
        self.stdout = stdout
        self.stderr = stderr


class PipelineAbortedError(ChanflowError):
    """
    Raised by ``Pipeline.run`` when a fatal error stopped the dataflow.
    """

    def __init__(
        self,
        process: str,
        cause: BaseException,
        fingerprint: Optional[str] = None,
        workdir: Optional[Path] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.process = process
        self.cause = cause
        self.fingerprint = fingerprint
        self.workdir = workdir
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(self.report())

    def report(self) -> str:
        """
        Build a human readable report of the failure.
        """
        lines = [f"Error executing process '{self.process}': {self.cause}"]
        if self.fingerprint:
            lines.append(f"  Fingerprint: {self.fingerprint}")
        if self.workdir:
            lines.append(f"  Work dir: {self.workdir}")
        if self.stdout:
            lines.append("  Command output:")
            lines.extend(f"    {line}" for line in self.stdout.rstrip().splitlines())
        if self.stderr:
            lines.append("  Command error:")
            lines.extend(f"    {line}" for line in self.stderr.rstrip().splitlines())
        return "\n".join(lines)


class NotificationError(ChanflowError):
    """
    Raised by notifiers when the transport fails to deliver a message.
    """

    pass
