"""
Immutable process definitions.

A process couples a task body (a shell script template or a native Python
callable) with its input, output and share port declarations and with the
directives that tune caching, error handling and execution.
"""

import inspect
import logging
import textwrap
import tokenize
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from string import Template
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from pydantic import BaseModel, Field, field_validator

from .channel import Channel
from .errors import BindingError, ProcessDefinitionError

logger = logging.getLogger(__name__)

ChannelRef = Union[str, Channel, None]

DEFAULT_EXECUTOR = "local"


class InputKind(str, Enum):
    """
    Classifier of an input port.
    """

    VAL = "val"
    ENV = "env"
    FILE = "file"
    STDIN = "stdin"
    SET = "set"
    EACH = "each"


class OutputKind(str, Enum):
    """
    Classifier of an output port.
    """

    VAL = "val"
    FILE = "file"
    STDOUT = "stdout"
    SET = "set"


class ErrorStrategy(str, Enum):
    TERMINATE = "terminate"
    IGNORE = "ignore"


CacheMode = Union[bool, Literal["deep"]]


class Directives(BaseModel):
    """
    Per-process execution settings.

    Keys are accepted both in snake_case and in the camelCase form used by
    pipeline configuration files (``errorStrategy``, ``storeDir``,
    ``validExitStatus``).
    """

    cache: CacheMode = Field(
        default=True, description="Cache mode: false, true or 'deep'"
    )
    echo: bool = Field(
        default=False, description="Forward task stdout to the pipeline stdout"
    )
    error_strategy: ErrorStrategy = Field(
        default=ErrorStrategy.TERMINATE, alias="errorStrategy"
    )
    executor: Optional[str] = Field(
        default=None, description="Executor name, None for the configured default"
    )
    store_dir: Optional[Path] = Field(default=None, alias="storeDir")
    valid_exit_status: FrozenSet[int] = Field(
        default=frozenset({0}), alias="validExitStatus"
    )

    model_config = {"frozen": True, "populate_by_name": True, "extra": "forbid"}

    @field_validator("cache", mode="before")
    @classmethod
    def parse_cache(cls, v):
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in ("true", "yes", "on"):
                return True
            if lowered in ("false", "no", "off"):
                return False
            if lowered == "deep":
                return "deep"
            raise ValueError(f"Invalid cache mode: {v!r}")
        return v

    @field_validator("valid_exit_status", mode="before")
    @classmethod
    def parse_exit_status(cls, v):
        if isinstance(v, int):
            return frozenset({v})
        if not v:
            raise ValueError("validExitStatus cannot be empty")
        return v

    def merged(self, overrides: Mapping[str, Any]) -> "Directives":
        """
        Return a copy with the given (snake_case or camelCase) keys replaced.
        """
        data = self.model_dump(exclude_unset=True)
        for key, value in overrides.items():
            data[_FIELD_BY_ALIAS.get(key, key)] = value
        return Directives.model_validate(data)


_FIELD_BY_ALIAS = {
    info.alias: name
    for name, info in Directives.model_fields.items()
    if info.alias is not None
}


def format_template_value(value: Any) -> str:
    """
    Render a bound value the way it appears in a script template.

    Collections become space separated, paths their string form.
    """
    if isinstance(value, (list, tuple)):
        return " ".join(format_template_value(v) for v in value)
    if value is None:
        return ""
    return str(value)


def substitute(template: str, variables: Mapping[str, Any]) -> str:
    """
    Substitute ``$name`` and ``${name}`` references, leaving unknown ones
    (such as shell variables) untouched.
    """
    values = {k: format_template_value(v) for k, v in variables.items()}
    return Template(template).safe_substitute(values)


@dataclass(frozen=True)
class InputSpec:
    """
    Declaration of one input port.
    """

    kind: InputKind
    name: str
    stage_as: Optional[str] = None
    source: ChannelRef = None
    members: Tuple["InputSpec", ...] = ()

    def __post_init__(self):
        if not self.name:
            raise ProcessDefinitionError("Input name cannot be empty")
        if self.kind == InputKind.SET:
            if not self.members:
                raise ProcessDefinitionError("A set input requires at least one member")
            for member in self.members:
                if member.kind in (InputKind.SET, InputKind.EACH):
                    raise ProcessDefinitionError(
                        f"Set member '{member.name}' cannot be a {member.kind.value}"
                    )
                if member.source is not None:
                    raise ProcessDefinitionError(
                        f"Set member '{member.name}' cannot declare its own source"
                    )
        elif self.members:
            raise ProcessDefinitionError("Only set inputs can declare members")
        if self.stage_as is not None and self.kind != InputKind.FILE:
            raise ProcessDefinitionError(
                f"Input '{self.name}': only file inputs accept a staged name"
            )

    @classmethod
    def val(cls, name: str, source: ChannelRef = None) -> "InputSpec":
        return cls(InputKind.VAL, name, source=source)

    @classmethod
    def env(cls, name: str, source: ChannelRef = None) -> "InputSpec":
        return cls(InputKind.ENV, name, source=source)

    @classmethod
    def file(
        cls, name: str, stage_as: Optional[str] = None, source: ChannelRef = None
    ) -> "InputSpec":
        return cls(InputKind.FILE, name, stage_as=stage_as, source=source)

    @classmethod
    def stdin(cls, name: str = "stdin", source: ChannelRef = None) -> "InputSpec":
        return cls(InputKind.STDIN, name, source=source)

    @classmethod
    def each(cls, name: str, source: ChannelRef = None) -> "InputSpec":
        return cls(InputKind.EACH, name, source=source)

    @classmethod
    def set(
        cls, *members: Union[str, "InputSpec"], source: ChannelRef = None
    ) -> "InputSpec":
        """
        Declare a composite input destructured positionally into members.

        A bare identifier member is a value, any other string literal is a
        file staged under that literal name.
        """
        resolved = tuple(_coerce_input_member(m) for m in members)
        name = ",".join(m.name for m in resolved) or "set"
        return cls(InputKind.SET, name, source=source, members=resolved)

    @property
    def is_repeater(self) -> bool:
        return self.kind == InputKind.EACH

    def flatten(self) -> List["InputSpec"]:
        return list(self.members) if self.kind == InputKind.SET else [self]


def _coerce_input_member(member: Union[str, InputSpec]) -> InputSpec:
    if isinstance(member, InputSpec):
        return member
    if member.isidentifier():
        return InputSpec.val(member)
    return InputSpec.file(member, stage_as=member)


@dataclass(frozen=True)
class OutputSpec:
    """
    Declaration of one output port.

    ``name`` is the script variable for ``val`` outputs and the file
    pattern for ``file`` outputs. Without ``into`` the port publishes to the
    channel of the same name.
    """

    kind: OutputKind
    name: str
    into: ChannelRef = None
    members: Tuple["OutputSpec", ...] = ()

    def __post_init__(self):
        if not self.name:
            raise ProcessDefinitionError("Output name cannot be empty")
        if self.kind == OutputKind.SET:
            if not self.members:
                raise ProcessDefinitionError("A set output requires at least one member")
            if self.into is None:
                raise ProcessDefinitionError("A set output requires a target channel")
            for member in self.members:
                if member.kind == OutputKind.SET or member.into is not None:
                    raise ProcessDefinitionError(
                        f"Invalid set output member '{member.name}'"
                    )

    @classmethod
    def val(cls, name: str, into: ChannelRef = None) -> "OutputSpec":
        return cls(OutputKind.VAL, name, into=into)

    @classmethod
    def file(cls, pattern: str, into: ChannelRef = None) -> "OutputSpec":
        return cls(OutputKind.FILE, pattern, into=into)

    @classmethod
    def stdout(cls, into: ChannelRef = None) -> "OutputSpec":
        return cls(OutputKind.STDOUT, "stdout", into=into)

    @classmethod
    def set(cls, *members: Union[str, "OutputSpec"], into: ChannelRef) -> "OutputSpec":
        resolved = tuple(_coerce_output_member(m) for m in members)
        return cls(
            OutputKind.SET,
            ",".join(m.name for m in resolved) or "set",
            into=into,
            members=resolved,
        )

    @property
    def target(self) -> Union[str, Channel]:
        return self.into if self.into is not None else self.name

    def file_patterns(self) -> List[str]:
        if self.kind == OutputKind.FILE:
            return [self.name]
        return [m.name for m in self.members if m.kind == OutputKind.FILE]


def _coerce_output_member(member: Union[str, OutputSpec]) -> OutputSpec:
    if isinstance(member, OutputSpec):
        return member
    if member.isidentifier():
        return OutputSpec.val(member)
    return OutputSpec.file(member)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


@dataclass(frozen=True)
class ShareSpec:
    """
    Declaration of a mutable value shared by every invocation of a process.
    """

    name: str
    initial: Any = UNSET
    into: ChannelRef = None

    def __post_init__(self):
        if not self.name or not self.name.isidentifier():
            raise ProcessDefinitionError(f"Invalid share name: {self.name!r}")


class TaskBody(ABC):
    """
    What a task runs: a shell script or a native callable.
    """

    @abstractmethod
    def render(self, variables: Mapping[str, Any]) -> str:
        """
        Return the text that identifies this body for the given variables.

        For shell scripts this is the script to execute.
        """
        pass

    @property
    def is_native(self) -> bool:
        return False


@dataclass(frozen=True)
class ShellScript(TaskBody):
    """
    Shell script template with ``$name`` placeholders.

    ``template`` can also be a callable selecting the template from the bound
    variables; returning None means no branch matched.
    """

    template: Union[str, Callable[[Mapping[str, Any]], Optional[str]]]

    def render(self, variables: Mapping[str, Any]) -> str:
        text = self.template(variables) if callable(self.template) else self.template
        if text is None:
            raise BindingError("No script template matched the bound inputs")
        text = textwrap.dedent(text).strip("\n") + "\n"
        return substitute(text, variables)


@dataclass(frozen=True)
class NativeBody(TaskBody):
    """
    Python callable executed in-process.

    The callable receives the task scope as a dict. Returning a mapping
    updates script variables, returning a string sets the task stdout.
    """

    function: Callable[[Dict[str, Any]], Any]

    def render(self, variables: Mapping[str, Any]) -> str:
        fn = self.function
        identity = f"{getattr(fn, '__module__', '')}.{getattr(fn, '__qualname__', repr(fn))}"
        try:
            return identity + "\n" + inspect.getsource(fn)
        except (OSError, TypeError, SyntaxError, tokenize.TokenError):
            return identity

    @property
    def is_native(self) -> bool:
        return True


@dataclass(frozen=True)
class ProcessDefinition:
    """
    Immutable description of a process.
    """

    name: str
    body: Union[TaskBody, str, Callable[..., Any]]
    inputs: Sequence[InputSpec] = ()
    outputs: Sequence[OutputSpec] = ()
    shares: Sequence[ShareSpec] = ()
    directives: Directives = field(default_factory=Directives)

    def __post_init__(self):
        if not self.name:
            raise ProcessDefinitionError("Process name cannot be empty")

        body = self.body
        if isinstance(body, str):
            body = ShellScript(body)
        elif not isinstance(body, TaskBody):
            if not callable(body):
                raise ProcessDefinitionError(
                    f"Process '{self.name}': body must be a script or a callable"
                )
            body = NativeBody(body)
        object.__setattr__(self, "body", body)
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "shares", tuple(self.shares))
        if isinstance(self.directives, Mapping):
            object.__setattr__(
                self, "directives", Directives.model_validate(self.directives)
            )

        self._validate()

    def _validate(self) -> None:
        flat = self.flat_inputs
        names = [spec.name for spec in flat] + [share.name for share in self.shares]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ProcessDefinitionError(
                f"Process '{self.name}' declares duplicate names: {', '.join(duplicates)}"
            )

        if sum(1 for spec in flat if spec.kind == InputKind.STDIN) > 1:
            raise ProcessDefinitionError(
                f"Process '{self.name}' declares more than one stdin input"
            )

        for spec in self.inputs:
            if spec.kind == InputKind.SET and spec.source is None:
                raise ProcessDefinitionError(
                    f"Process '{self.name}': set input '{spec.name}' needs a source"
                )

        if self.body.is_native and self.directives.executor not in (
            None,
            DEFAULT_EXECUTOR,
        ):
            raise ProcessDefinitionError(
                f"Process '{self.name}': native bodies only run on the "
                f"'{DEFAULT_EXECUTOR}' executor"
            )

    @property
    def flat_inputs(self) -> List[InputSpec]:
        """Input ports with set members expanded in declaration order."""
        return [member for spec in self.inputs for member in spec.flatten()]

    @property
    def drivers(self) -> List[InputSpec]:
        """Inputs consumed one item per firing."""
        return [spec for spec in self.inputs if not spec.is_repeater]

    @property
    def repeaters(self) -> List[InputSpec]:
        return [spec for spec in self.inputs if spec.is_repeater]

    @property
    def has_shares(self) -> bool:
        return bool(self.shares)

    def with_directives(self, **overrides: Any) -> "ProcessDefinition":
        """
        Return a new definition with some directives replaced.
        """
        return replace(self, directives=self.directives.merged(overrides))

    def __str__(self) -> str:
        return f"Process({self.name})"
