"""
Input binding and firing rules.

The binder watches the input channels of one process and yields the value
bindings of every task invocation:

- non-repeater inputs are zipped, one item per channel per firing, until any
  of them is closed and exhausted;
- repeater (``each``) inputs are fully drained before the first firing and
  every firing is expanded into the Cartesian product of their values, the
  first declared repeater varying slowest;
- ``set`` inputs destructure one composite item into their members.
"""

import itertools
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List

from .channel import END_OF_STREAM, Channel, ChannelRegistry
from .errors import BindingError
from .process import InputKind, InputSpec, ProcessDefinition

logger = logging.getLogger(__name__)


def as_file_value(spec: InputSpec, item: Any) -> Any:
    """
    Normalize an item bound to a file input: a path or a list of paths.
    """
    if isinstance(item, (str, Path)):
        return Path(item)
    if isinstance(item, (list, tuple)) and all(
        isinstance(p, (str, Path)) for p in item
    ):
        return [Path(p) for p in item]
    raise BindingError(
        f"File input '{spec.name}' expects a path or a list of paths, "
        f"got {type(item).__name__}"
    )


class InputBinder:
    """
    Computes the bindings of successive task invocations for a process.
    """

    def __init__(self, process: ProcessDefinition, channels: ChannelRegistry):
        self.process = process
        self._sources: Dict[str, Channel] = {
            spec.name: self._resolve_source(spec, channels) for spec in process.inputs
        }

    def _resolve_source(self, spec: InputSpec, channels: ChannelRegistry) -> Channel:
        if isinstance(spec.source, Channel):
            return spec.source
        if spec.source is None:
            if spec.name not in channels:
                logger.debug(
                    f"Process '{self.process.name}': input '{spec.name}' "
                    f"bound to a channel created on first reference"
                )
            return channels.get_or_create(spec.name)
        return channels.get_or_create(spec.source)

    def source_of(self, name: str) -> Channel:
        return self._sources[name]

    def repeater_values(self) -> List[List[Any]]:
        """
        Drain every repeater channel and return its collection.

        A repeater whose channel carries a single list or tuple uses that
        item as its collection.
        """
        collections = []
        for spec in self.process.repeaters:
            items = self._sources[spec.name].drain()
            if len(items) == 1 and isinstance(items[0], (list, tuple)):
                items = list(items[0])
            if not items:
                raise BindingError(
                    f"Process '{self.process.name}': repeater '{spec.name}' has no values"
                )
            collections.append(items)
        return collections

    def bind(self, spec: InputSpec, item: Any) -> Dict[str, Any]:
        """
        Bind one channel item to an input port, destructuring sets.
        """
        if spec.kind == InputKind.SET:
            if not isinstance(item, (list, tuple)):
                raise BindingError(
                    f"Set input '{spec.name}' expects a tuple, got {type(item).__name__}"
                )
            if len(item) != len(spec.members):
                raise BindingError(
                    f"Set input '{spec.name}' expects {len(spec.members)} "
                    f"values, got {len(item)}"
                )
            values: Dict[str, Any] = {}
            for member, value in zip(spec.members, item):
                values.update(self.bind(member, value))
            return values
        if spec.kind == InputKind.FILE:
            return {spec.name: as_file_value(spec, item)}
        return {spec.name: item}

    def _natural_firings(self) -> Iterator[Dict[str, Any]]:
        drivers = self.process.drivers
        if not drivers:
            yield {}
            return

        fired = 0
        while True:
            row: Dict[str, Any] = {}
            for spec in drivers:
                item = self._sources[spec.name].next()
                if item is END_OF_STREAM:
                    logger.debug(
                        f"Process '{self.process.name}': input '{spec.name}' "
                        f"exhausted after {fired} firings"
                    )
                    return
                row[spec.name] = item
            fired += 1
            yield row

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        """
        Yield the flat name -> value binding of each invocation, in order.
        """
        repeaters = self.process.repeaters
        collections = self.repeater_values()

        for row in self._natural_firings():
            for combination in itertools.product(*collections):
                chosen = dict(zip((spec.name for spec in repeaters), combination))
                binding: Dict[str, Any] = {}
                for spec in self.process.inputs:
                    item = chosen[spec.name] if spec.is_repeater else row[spec.name]
                    binding.update(self.bind(spec, item))
                yield binding

    def close_sources(self) -> None:
        for channel in self._sources.values():
            channel.close()
