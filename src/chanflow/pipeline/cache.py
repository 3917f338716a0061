"""
Task caching.

Two layers avoid re-running a task:

- the task cache, keyed by a fingerprint of the rendered script and the
  bound inputs, kept in memory and persisted as JSON under the cache
  directory (``<cache_dir>/<fp[:2]>/<fp>.json``);
- the store directory (``storeDir`` directive), a permanent location whose
  content alone decides whether a task needs to run.
"""

import hashlib
import json
import logging
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .process import CacheMode, InputKind, InputSpec
from .staging import match_output_files

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 20


def file_digest(path: Path) -> str:
    """
    SHA-256 of a file's content, or of a directory tree.
    """
    digest = hashlib.sha256()
    if path.is_dir():
        for child in sorted(p for p in path.rglob("*") if p.is_file()):
            digest.update(str(child.relative_to(path)).encode("utf-8"))
            digest.update(file_digest(child).encode("ascii"))
        return digest.hexdigest()

    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def describe_file(path: Path, mode: CacheMode) -> Dict[str, Any]:
    """
    Identity of an input file for fingerprinting.

    Standard mode uses path, size and modification time. Deep mode uses the
    content digest only, so identical content at another location matches.
    """
    resolved = Path(path).resolve()
    if mode == "deep":
        return {"sha256": file_digest(resolved)}
    stat = resolved.stat()
    return {"path": str(resolved), "size": stat.st_size, "mtime": stat.st_mtime_ns}


def describe_input(spec: InputSpec, value: Any, mode: CacheMode) -> Any:
    if spec.kind == InputKind.FILE:
        if isinstance(value, list):
            return [describe_file(p, mode) for p in value]
        return describe_file(value, mode)
    return value


def compute_fingerprint(
    process_name: str,
    script: str,
    inputs: Sequence[Tuple[InputSpec, Any]],
    mode: CacheMode,
) -> Optional[str]:
    """
    Compute the cache key of a task invocation.

    Returns None when caching is disabled (``mode`` is False).
    """
    if mode is False:
        return None

    payload = {
        "process": process_name,
        "script": script,
        "inputs": [
            [spec.name, spec.kind.value, describe_input(spec, value, mode)]
            for spec, value in inputs
        ],
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def encode_value(value: Any) -> Any:
    """
    Make an output value JSON friendly while keeping paths and tuples apart.
    """
    if isinstance(value, Path):
        return {"__path__": str(value)}
    if isinstance(value, tuple):
        return {"__tuple__": [encode_value(v) for v in value]}
    if isinstance(value, list):
        return [encode_value(v) for v in value]
    if isinstance(value, dict):
        return {"__dict__": {k: encode_value(v) for k, v in value.items()}}
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    if isinstance(value, dict):
        if "__path__" in value:
            return Path(value["__path__"])
        if "__tuple__" in value:
            return tuple(decode_value(v) for v in value["__tuple__"])
        if "__dict__" in value:
            return {k: decode_value(v) for k, v in value["__dict__"].items()}
    return value


def iter_paths(value: Any) -> Iterator[Path]:
    """
    Yield every path nested in a (decoded) output value.
    """
    if isinstance(value, Path):
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_paths(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_paths(item)


class CacheEntry(BaseModel):
    """
    Recorded result of a successful task.
    """

    fingerprint: str
    process: str
    script: str = ""
    inputs: List[Any] = Field(default_factory=list)
    outputs: List[Any] = Field(default_factory=list)
    exit_status: int = 0
    stdout: str = ""
    workdir: Optional[Path] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(
        cls,
        fingerprint: str,
        process: str,
        outputs: Sequence[Any],
        exit_status: int,
        **kwargs: Any,
    ) -> "CacheEntry":
        return cls(
            fingerprint=fingerprint,
            process=process,
            outputs=[encode_value(v) for v in outputs],
            exit_status=exit_status,
            **kwargs,
        )

    def output_values(self) -> List[Any]:
        return [decode_value(v) for v in self.outputs]

    def missing_files(self) -> List[Path]:
        return [p for p in iter_paths(self.output_values()) if not p.exists()]


class TaskCache:
    """
    Thread-safe fingerprint -> CacheEntry store.

    ``locked`` serializes work on one fingerprint so that identical
    concurrent invocations run once and the others hit the cache.
    """

    def __init__(self, cache_dir: Optional[Path] = None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        # fingerprint -> [lock, holders and waiters]
        self._fingerprint_locks: Dict[str, List[Any]] = {}

    @contextmanager
    def locked(self, fingerprint: str) -> Iterator[None]:
        with self._lock:
            slot = self._fingerprint_locks.setdefault(fingerprint, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._lock:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._fingerprint_locks[fingerprint]

    def entry_path(self, fingerprint: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / fingerprint[:2] / f"{fingerprint}.json"

    def _load(self, fingerprint: str) -> Optional[CacheEntry]:
        path = self.entry_path(fingerprint)
        if path is None or not path.exists():
            return None
        try:
            return CacheEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning(f"Ignoring unreadable cache entry {path}: {e}")
            return None

    def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        """
        Return the entry recorded for a fingerprint, if still valid.
        """
        with self._lock:
            entry = self._entries.get(fingerprint)
        if entry is None:
            entry = self._load(fingerprint)
            if entry is None:
                return None

        missing = entry.missing_files()
        if missing:
            logger.info(
                f"Cache entry {fingerprint[:8]} invalidated, missing outputs: "
                f"{', '.join(str(p) for p in missing)}"
            )
            self.invalidate(fingerprint)
            return None

        with self._lock:
            self._entries[fingerprint] = entry
        return entry

    def store(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.fingerprint] = entry

        path = self.entry_path(entry.fingerprint)
        if path is None:
            return
        try:
            data = entry.model_dump_json(indent=2)
        except ValueError as e:
            logger.warning(
                f"Outputs of '{entry.process}' cannot be serialized, "
                f"caching in memory only: {e}"
            )
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(path)
        logger.debug(f"Stored cache entry {path}")

    def invalidate(self, fingerprint: str) -> None:
        with self._lock:
            self._entries.pop(fingerprint, None)
        path = self.entry_path(fingerprint)
        if path is not None and path.exists():
            path.unlink()

    def entries(self) -> List[CacheEntry]:
        """
        All entries persisted on disk, oldest first.
        """
        if self.cache_dir is None or not self.cache_dir.exists():
            with self._lock:
                return list(self._entries.values())
        found = []
        for path in sorted(self.cache_dir.glob("??/*.json")):
            entry = self._load(path.stem)
            if entry is not None:
                found.append(entry)
        return sorted(found, key=lambda e: e.created_at)

    def clear(self) -> int:
        """
        Remove every entry. Returns the number of persisted entries deleted.
        """
        with self._lock:
            self._entries.clear()
        removed = 0
        if self.cache_dir is not None and self.cache_dir.exists():
            for path in self.cache_dir.glob("??/*.json"):
                path.unlink()
                removed += 1
        return removed


class StoreDir:
    """
    Permanent output directory of a process.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def has_outputs(self, patterns: Sequence[str]) -> bool:
        """
        True when every declared output pattern matches inside the directory.
        """
        if not patterns or not self.path.is_dir():
            return False
        return all(match_output_files(self.path, pattern) for pattern in patterns)

    def publish(self, files: Sequence[Path], workdir: Path) -> List[Path]:
        """
        Copy produced files into the store, keeping their path relative to
        the work directory.
        """
        published = []
        for source in files:
            try:
                relative = source.relative_to(workdir)
            except ValueError:
                relative = Path(source.name)
            target = self.path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)
            published.append(target)
        logger.info(f"Published {len(published)} file(s) to {self.path}")
        return published
