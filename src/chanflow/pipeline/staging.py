"""
File staging name resolution.

Input files are exposed to a task under names derived from the declared
staging pattern and the number of bound files. The mapping is pure and
deterministic since staged names are part of the rendered script, and hence
of the cache fingerprint.
"""

import logging
import re
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

from .process import substitute

logger = logging.getLogger(__name__)

WILDCARD_RUN = re.compile(r"\*+|\?+")
GLOB_CHARS = re.compile(r"[*?\[]")

# Files written by the engine into every work directory.
COMMAND_FILE_PREFIX = ".command"

PathLike = Union[str, Path]


def has_wildcards(pattern: str) -> bool:
    return WILDCARD_RUN.search(pattern) is not None


def _fill_wildcards(pattern: str, index: Optional[int]) -> str:
    """
    Replace every wildcard run in ``pattern``.

    A ``*`` run becomes the index (nothing for a single file), a ``?`` run
    becomes the index zero-padded to the run length.
    """

    def replace(match: re.Match) -> str:
        run = match.group(0)
        if run[0] == "*":
            return "" if index is None else str(index)
        return str(1 if index is None else index).zfill(len(run))

    return WILDCARD_RUN.sub(replace, pattern)


def _insert_ordinal(name: str, ordinal: int) -> str:
    path = Path(name)
    suffix = path.suffix
    stem = name[: len(name) - len(suffix)] if suffix else name
    return f"{stem}{ordinal}{suffix}"


def resolve_stage_names(items: Sequence[PathLike], pattern: Optional[str]) -> List[str]:
    """
    Compute the names under which ``items`` are staged.

    Examples:
        one item,  ``file*.ext``  -> ``file.ext``
        one item,  ``file??.ext`` -> ``file01.ext``
        3 items,   ``seq?.fa``    -> ``seq1.fa``, ``seq2.fa``, ``seq3.fa``
        2 items,   ``seq.fa``     -> ``seq1.fa``, ``seq2.fa``
        no pattern                -> original base names
    """
    count = len(items)
    if not pattern:
        return [Path(item).name for item in items]

    if count == 1:
        return [_fill_wildcards(pattern, None)]

    if has_wildcards(pattern):
        return [_fill_wildcards(pattern, i) for i in range(1, count + 1)]

    return [_insert_ordinal(pattern, i) for i in range(1, count + 1)]


def resolve_stage_pattern(
    pattern: Optional[str], variables: Mapping[str, Any]
) -> Optional[str]:
    """
    Resolve references to other bound inputs in a parametric staged name.
    """
    if pattern is None:
        return None
    return substitute(pattern, variables)


def stage_files(
    workdir: Path, items: Sequence[PathLike], names: Sequence[str]
) -> List[Path]:
    """
    Symlink each item into ``workdir`` under its staged name.
    """
    staged = []
    for item, name in zip(items, names):
        source = Path(item).resolve()
        if not source.exists():
            raise FileNotFoundError(f"Input file not found: {source}")
        target = workdir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.exists():
            target.unlink()
        target.symlink_to(source)
        logger.debug(f"Staged {source} as {target}")
        staged.append(target)
    return staged


def match_output_files(base_dir: Path, pattern: str) -> List[Path]:
    """
    Find the files produced in ``base_dir`` matching a declared output pattern.

    Glob patterns return every match in sorted order, excluding the engine's
    own command files. Literal names match when the file exists.
    """
    if not GLOB_CHARS.search(pattern):
        candidate = base_dir / pattern
        return [candidate] if candidate.exists() else []

    return sorted(
        path
        for path in base_dir.glob(pattern)
        if not path.name.startswith(COMMAND_FILE_PREFIX)
    )
