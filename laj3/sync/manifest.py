"""Dictionary model and generation from a directory tree."""

from __future__ import annotations

import hashlib
import logging
import stat
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional, Tuple, Union

from ..errors import FileAccessError, InvalidPathError

logger = logging.getLogger("laj3.sync.manifest")

CHUNK_SIZE = 64 * 1024
FINGERPRINT_SIZE = hashlib.sha256().digest_size


@dataclass(frozen=True)
class FileEntry:
    """Fingerprint of a single file in a tree."""

    path: str  # Relative POSIX path from the tree root
    size: int  # File size in bytes
    fingerprint: str  # SHA-256 hex digest of content
    mtime_ns: Optional[int] = None  # Modification time, when known

    def __post_init__(self) -> None:
        if self.mtime_ns is not None and self.mtime_ns < 0:
            raise ValueError(f"mtime_ns must be non-negative, got {self.mtime_ns}")

    def same_content(self, other: "FileEntry") -> bool:
        return self.fingerprint == other.fingerprint


@dataclass(frozen=True)
class Dictionary:
    """Complete, ordered state of a tree at one point in time.

    Entries are kept sorted by path. Building a Dictionary with two entries
    for the same path raises ``ValueError``.
    """

    entries: Tuple[FileEntry, ...] = ()
    _index: Mapping[str, FileEntry] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.entries, key=lambda entry: entry.path))
        index = {}
        for entry in ordered:
            if entry.path in index:
                raise ValueError(f"Duplicate path in dictionary: {entry.path!r}")
            index[entry.path] = entry
        object.__setattr__(self, "entries", ordered)
        object.__setattr__(self, "_index", MappingProxyType(index))

    @classmethod
    def from_entries(cls, entries: Iterable[FileEntry]) -> "Dictionary":
        return cls(tuple(entries))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self.entries)

    def __contains__(self, path: object) -> bool:
        return path in self._index

    def get(self, path: str) -> Optional[FileEntry]:
        return self._index.get(path)

    @property
    def paths(self) -> Tuple[str, ...]:
        return tuple(entry.path for entry in self.entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries)


class DictionaryBuilder:
    """Builds dictionaries by scanning a root directory."""

    def __init__(
        self,
        root: Union[str, Path],
        recursive: bool = False,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.root = Path(root)
        self.recursive = recursive
        self.chunk_size = chunk_size

    def build(self, empty: bool = False) -> Dictionary:
        """Build a dictionary of the root.

        With ``empty`` set the root still has to exist, but its contents are
        ignored and the result has no entries.
        """
        if not self.root.exists():
            raise InvalidPathError(f"Root '{self.root}' does not exist")

        if empty:
            logger.info("Built empty dictionary for %s", self.root)
            return Dictionary()

        if self.root.is_file():
            entry = self._get_entry(self.root, self.root.name)
            logger.info("Built dictionary for single file %s", self.root)
            return Dictionary((entry,))

        if not self.root.is_dir():
            raise InvalidPathError(f"Root '{self.root}' is neither a file nor a directory")

        try:
            children = sorted(self.root.iterdir())
        except OSError as e:
            raise InvalidPathError(f"Cannot list root '{self.root}': {e}") from e

        entries = [
            self._get_entry(file_path, file_path.relative_to(self.root).as_posix())
            for file_path in self._iter_files(children)
        ]
        dictionary = Dictionary(tuple(entries))
        logger.info(
            "Built dictionary with %d files (%d bytes) from %s",
            len(dictionary), dictionary.total_size, self.root,
        )
        return dictionary

    def _iter_files(self, children: Iterable[Path]) -> Iterator[Path]:
        """Yield regular files, descending into directories when recursive."""
        for child in children:
            try:
                mode = child.stat().st_mode
            except OSError as e:
                raise FileAccessError(f"Cannot stat '{child}': {e}") from e

            if stat.S_ISREG(mode):
                yield child
            elif stat.S_ISDIR(mode):
                if not self.recursive or child.is_symlink():
                    continue
                try:
                    grandchildren = sorted(child.iterdir())
                except OSError as e:
                    raise FileAccessError(f"Cannot list directory '{child}': {e}") from e
                yield from self._iter_files(grandchildren)
            else:
                logger.debug("Skipping special file %s", child)

    def _get_entry(self, file_path: Path, rel_path: str) -> FileEntry:
        """Get file entry including fingerprint."""
        try:
            info = file_path.stat()
            fingerprint = compute_file_hash(file_path, self.chunk_size)
        except OSError as e:
            raise FileAccessError(f"Cannot read '{file_path}': {e}") from e

        return FileEntry(
            path=rel_path,
            size=info.st_size,
            fingerprint=fingerprint,
            # pre-1970 timestamps are not recorded
            mtime_ns=info.st_mtime_ns if info.st_mtime_ns >= 0 else None,
        )


def build_dictionary(
    root: Union[str, Path],
    recursive: bool = False,
    empty: bool = False,
) -> Dictionary:
    """Build a dictionary of ``root``; see :class:`DictionaryBuilder`."""
    return DictionaryBuilder(root, recursive=recursive).build(empty=empty)


def compute_file_hash(file_path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file."""
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


__all__ = [
    "FileEntry",
    "Dictionary",
    "DictionaryBuilder",
    "build_dictionary",
    "compute_file_hash",
    "CHUNK_SIZE",
    "FINGERPRINT_SIZE",
]
