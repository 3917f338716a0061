"""
Shared state of processes declaring a share block.

Every invocation of such a process sees, and may update, the same share
slots. Invocations are serialized so that slot updates never interleave, and
each slot's final value is emitted once after the last invocation.
"""

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

from .channel import Channel, ChannelRegistry
from .process import UNSET, ProcessDefinition

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ShareStateManager:
    """
    Owns the share slots of one process definition.
    """

    def __init__(
        self,
        process: ProcessDefinition,
        channels: ChannelRegistry,
        scope: Optional[Mapping[str, Any]] = None,
    ):
        self.process = process
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._targets: Dict[str, Optional[Channel]] = {}
        self._finalized = False
        self.invocations = 0
        scope = scope or {}

        for spec in process.shares:
            if spec.initial is not UNSET:
                value = spec.initial
            elif spec.name in scope:
                value = scope[spec.name]
            else:
                value = None
            self._values[spec.name] = value

            if spec.into is None:
                self._targets[spec.name] = None
            elif isinstance(spec.into, Channel):
                self._targets[spec.name] = spec.into
            else:
                self._targets[spec.name] = channels.get_or_create(spec.into)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def update(self, variables: Mapping[str, Any]) -> None:
        """
        Record the slot values left by an invocation.
        """
        for name in self._values:
            if name in variables:
                self._values[name] = variables[name]

    def run(self, fn: Callable[..., T], *args: Any) -> T:
        """
        Call ``fn`` while holding the process-wide execution lock.
        """
        with self._lock:
            self.invocations += 1
            return fn(*args)

    def finalize(self, emit: bool = True) -> None:
        """
        Emit the final slot values and close their channels. Only the first
        call has an effect.
        """
        with self._lock:
            if self._finalized:
                return
            self._finalized = True
            for name, channel in self._targets.items():
                if channel is None:
                    continue
                if emit:
                    channel.send(self._values[name])
                    logger.debug(
                        f"Process '{self.process.name}': emitted final value of "
                        f"share '{name}'"
                    )
                channel.close()
