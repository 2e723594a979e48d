"""Versioned binary storage for dictionaries.

Layout (big-endian)::

    magic    4 bytes   b"LJ3D"
    version  u16
    count    u32
    count records of:
        path_len     u16
        path         path_len bytes, UTF-8
        size         u64
        fingerprint  32 bytes, raw SHA-256 digest
        mtime_ns     i64, -1 when unknown, never otherwise negative
"""

from __future__ import annotations

import logging
import os
import struct
import tempfile
from pathlib import Path
from typing import List, Union

from ..errors import CorruptDictionaryError, FileAccessError, InvalidPathError
from .manifest import FINGERPRINT_SIZE, Dictionary, FileEntry

logger = logging.getLogger("laj3.sync.store")

MAGIC = b"LJ3D"
FORMAT_VERSION = 1

_HEADER = struct.Struct(">4sHI")
_PATH_LEN = struct.Struct(">H")
_RECORD_TAIL = struct.Struct(f">Q{FINGERPRINT_SIZE}sq")
_NO_MTIME = -1


def serialize(dictionary: Dictionary) -> bytes:
    """Encode a dictionary; the same dictionary always yields the same bytes."""
    parts = [_HEADER.pack(MAGIC, FORMAT_VERSION, len(dictionary))]
    for entry in dictionary:
        raw_path = entry.path.encode("utf-8")
        if len(raw_path) > 0xFFFF:
            raise ValueError(f"Path too long to serialize: {entry.path!r}")
        parts.append(_PATH_LEN.pack(len(raw_path)))
        parts.append(raw_path)
        parts.append(
            _RECORD_TAIL.pack(
                entry.size,
                bytes.fromhex(entry.fingerprint),
                _NO_MTIME if entry.mtime_ns is None else entry.mtime_ns,
            )
        )
    return b"".join(parts)


def deserialize(data: bytes) -> Dictionary:
    """Decode and validate a serialized dictionary."""
    view = memoryview(data)
    if len(view) < _HEADER.size:
        raise CorruptDictionaryError("Dictionary is truncated: missing header")

    magic, version, count = _HEADER.unpack_from(view, 0)
    if magic != MAGIC:
        raise CorruptDictionaryError(f"Bad dictionary magic {bytes(magic)!r}")
    if version != FORMAT_VERSION:
        raise CorruptDictionaryError(f"Unsupported dictionary version {version}")

    offset = _HEADER.size
    entries: List[FileEntry] = []
    for index in range(count):
        if offset + _PATH_LEN.size > len(view):
            raise CorruptDictionaryError(
                f"Dictionary is truncated: expected {count} entries, found {index}"
            )
        (path_len,) = _PATH_LEN.unpack_from(view, offset)
        offset += _PATH_LEN.size

        end = offset + path_len + _RECORD_TAIL.size
        if end > len(view):
            raise CorruptDictionaryError(
                f"Dictionary is truncated inside entry {index}"
            )
        try:
            path = bytes(view[offset:offset + path_len]).decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptDictionaryError(f"Entry {index} has an invalid path: {e}") from e
        offset += path_len

        size, digest, mtime_ns = _RECORD_TAIL.unpack_from(view, offset)
        offset = end

        _check_path(path)
        if mtime_ns < _NO_MTIME:
            raise CorruptDictionaryError(f"Entry {index} has a negative mtime {mtime_ns}")
        entries.append(
            FileEntry(
                path=path,
                size=size,
                fingerprint=digest.hex(),
                mtime_ns=None if mtime_ns == _NO_MTIME else mtime_ns,
            )
        )

    if offset != len(view):
        raise CorruptDictionaryError(
            f"Dictionary declares {count} entries but has {len(view) - offset} trailing bytes"
        )

    try:
        return Dictionary(tuple(entries))
    except ValueError as e:
        raise CorruptDictionaryError(str(e)) from e


def _check_path(path: str) -> None:
    """Reject paths that could point outside the tree they describe."""
    segments = path.split("/")
    if (
        not path
        or path.startswith("/")
        or "\x00" in path
        or any(segment in ("", ".", "..") for segment in segments)
    ):
        raise CorruptDictionaryError(f"Unsafe path in dictionary: {path!r}")


def save_dictionary(dictionary: Dictionary, path: Union[str, Path]) -> None:
    """Write a dictionary file, replacing any previous one atomically."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = serialize(dictionary)

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Saved dictionary to %s (%d files)", target, len(dictionary))


def load_dictionary(path: Union[str, Path]) -> Dictionary:
    """Load a dictionary file."""
    source = Path(path)
    if not source.is_file():
        raise InvalidPathError(f"Dictionary file '{source}' does not exist")
    try:
        data = source.read_bytes()
    except OSError as e:
        raise FileAccessError(f"Cannot read dictionary file '{source}': {e}") from e

    dictionary = deserialize(data)
    logger.debug("Loaded dictionary from %s (%d files)", source, len(dictionary))
    return dictionary


__all__ = [
    "MAGIC",
    "FORMAT_VERSION",
    "serialize",
    "deserialize",
    "save_dictionary",
    "load_dictionary",
]
