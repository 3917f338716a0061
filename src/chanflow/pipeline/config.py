"""
Process directive configuration files.

A YAML file can set directive defaults for every process and override them
for specific processes::

    process:
      cache: deep
      errorStrategy: terminate
      withName:
        align:
          errorStrategy: ignore
          validExitStatus: [0, 3]

Generic defaults only fill directives a process does not set itself,
``withName`` entries override them.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .process import Directives, ProcessDefinition

logger = logging.getLogger(__name__)


class ProcessConfig:
    """
    Directive overrides loaded from configuration.
    """

    def __init__(
        self,
        defaults: Optional[Dict[str, Any]] = None,
        by_name: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.defaults = dict(defaults or {})
        self.by_name = {name: dict(v or {}) for name, v in (by_name or {}).items()}
        # fail early on unknown keys or invalid values
        Directives().merged(self.defaults)
        for overrides in self.by_name.values():
            Directives().merged(overrides)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessConfig":
        section = dict((data or {}).get("process") or {})
        by_name = section.pop("withName", None) or {}
        return cls(defaults=section, by_name=by_name)

    def to_dict(self) -> Dict[str, Any]:
        section: Dict[str, Any] = dict(self.defaults)
        if self.by_name:
            section["withName"] = self.by_name
        return {"process": section}

    def apply(self, process: ProcessDefinition) -> ProcessDefinition:
        """
        Return the process with configured directives applied.
        """
        explicit = process.directives.model_dump(exclude_unset=True)
        overrides = {
            key: value
            for key, value in Directives().merged(self.defaults)
            .model_dump(exclude_unset=True)
            .items()
            if key not in explicit
        }
        overrides.update(
            Directives().merged(self.by_name.get(process.name, {})).model_dump(
                exclude_unset=True
            )
        )
        if not overrides:
            return process
        logger.debug(f"Applying configured directives to '{process.name}': {overrides}")
        return process.with_directives(**overrides)


def load_process_config(file_path: Union[str, Path]) -> ProcessConfig:
    """
    Load process directives from a YAML configuration file.
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(file_path, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        raise ValueError(f"Empty or invalid YAML file: {file_path}")

    return ProcessConfig.from_dict(data)
