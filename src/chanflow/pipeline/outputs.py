"""
Output binding: extract declared outputs of a finished task and publish
them onto their channels.
"""

import logging
from pathlib import Path
from typing import Any, List, Mapping

from .cache import iter_paths
from .channel import Channel, ChannelRegistry
from .errors import StagingError
from .process import OutputKind, OutputSpec, ProcessDefinition, substitute
from .staging import match_output_files

logger = logging.getLogger(__name__)


class OutputBinder:
    """
    Publishes task results of one process onto its output channels.
    """

    def __init__(self, process: ProcessDefinition, channels: ChannelRegistry):
        self.process = process
        self.channels: List[Channel] = [
            spec.target
            if isinstance(spec.target, Channel)
            else channels.get_or_create(spec.target)
            for spec in process.outputs
        ]

    def file_patterns(self, variables: Mapping[str, Any]) -> List[str]:
        """
        Declared output file patterns with variable references resolved.
        """
        return [
            substitute(pattern, variables)
            for spec in self.process.outputs
            for pattern in spec.file_patterns()
        ]

    def collect(
        self, variables: Mapping[str, Any], stdout: str, base_dir: Path
    ) -> List[Any]:
        """
        Extract the value of every output port, in declaration order.

        Raises StagingError when a file pattern matches nothing or a value
        output names an unknown variable.
        """
        return [
            self._extract(spec, variables, stdout, base_dir)
            for spec in self.process.outputs
        ]

    def _extract(
        self,
        spec: OutputSpec,
        variables: Mapping[str, Any],
        stdout: str,
        base_dir: Path,
    ) -> Any:
        if spec.kind == OutputKind.VAL:
            if spec.name not in variables:
                raise StagingError(
                    f"Process '{self.process.name}': output value '{spec.name}' "
                    f"is not defined"
                )
            return variables[spec.name]

        if spec.kind == OutputKind.FILE:
            pattern = substitute(spec.name, variables)
            files = match_output_files(base_dir, pattern)
            if not files:
                raise StagingError(
                    f"Process '{self.process.name}': missing output file(s) "
                    f"'{pattern}' in {base_dir}"
                )
            return files[0] if len(files) == 1 else files

        if spec.kind == OutputKind.STDOUT:
            return stdout

        return tuple(
            self._extract(member, variables, stdout, base_dir) for member in spec.members
        )

    @staticmethod
    def files(values: List[Any]) -> List[Path]:
        """All paths contained in collected output values."""
        return list(iter_paths(values))

    def emit(self, values: List[Any]) -> None:
        for channel, value in zip(self.channels, values):
            channel.send(value)

    def close(self) -> None:
        for channel in self.channels:
            channel.close()
