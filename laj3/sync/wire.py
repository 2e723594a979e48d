"""Frame codec for the laj3 TCP protocol.

Every message is a frame: ``type u8, length u32, payload``. A ``FILE`` frame
announces a body of ``size`` bytes which follows it on the stream, so large
files never have to fit in one frame.

A body is sent either raw (exactly ``size`` bytes) or, when the header's
deflate flag is set, as zlib blocks of ``length u32, data`` ended by a
zero-length block. ``size`` is always the uncompressed length.
"""

from __future__ import annotations

import logging
import socket
import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Iterator, List, Sequence, Tuple

from ..errors import ConnectionFailureError, ProtocolError, TransferInterruptedError

logger = logging.getLogger("laj3.sync.wire")

MAX_FRAME_SIZE = 256 * 1024 * 1024

FLAG_DEFLATE = 0x01

_FRAME_HEADER = struct.Struct(">BI")
_STR_LEN = struct.Struct(">H")
_COUNT = struct.Struct(">I")
_SIZE = struct.Struct(">Q")
_CODE = struct.Struct(">B")


class FrameType(IntEnum):
    """Message types exchanged between client and server."""
    HELLO = 1
    DICTIONARY = 2
    REQUEST = 3
    FILE = 4
    MISSING = 5
    ERROR = 6
    BYE = 7


class ErrorCode(IntEnum):
    """Reasons carried by an ``ERROR`` frame."""
    UNKNOWN_PROJECT = 1
    PROTOCOL = 2
    INTERNAL = 3


@dataclass(frozen=True)
class Frame:
    type: FrameType
    payload: bytes = b""


class PayloadReader:
    """Sequential decoder over a frame payload."""

    def __init__(self, payload: bytes):
        self._data = memoryview(payload)
        self._offset = 0

    def _take(self, size: int) -> memoryview:
        end = self._offset + size
        if end > len(self._data):
            raise ProtocolError("Frame payload is shorter than its fields")
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def read_str(self) -> str:
        (length,) = _STR_LEN.unpack(self._take(_STR_LEN.size))
        try:
            return bytes(self._take(length)).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Invalid UTF-8 in frame: {e}") from e

    def read_count(self) -> int:
        return _COUNT.unpack(self._take(_COUNT.size))[0]

    def read_size(self) -> int:
        return _SIZE.unpack(self._take(_SIZE.size))[0]

    def read_code(self) -> int:
        return _CODE.unpack(self._take(_CODE.size))[0]

    def finish(self) -> None:
        if self._offset != len(self._data):
            raise ProtocolError("Frame payload has trailing bytes")


def _pack_str(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > 0xFFFF:
        raise ValueError(f"String too long for a frame field: {value[:40]!r}...")
    return _STR_LEN.pack(len(raw)) + raw


def encode_hello(project: str) -> bytes:
    return _pack_str(project)


def decode_hello(payload: bytes) -> str:
    reader = PayloadReader(payload)
    project = reader.read_str()
    reader.finish()
    return project


def encode_request(paths: Sequence[str]) -> bytes:
    return _COUNT.pack(len(paths)) + b"".join(_pack_str(path) for path in paths)


def decode_request(payload: bytes) -> List[str]:
    reader = PayloadReader(payload)
    paths = [reader.read_str() for _ in range(reader.read_count())]
    reader.finish()
    return paths


def encode_file_header(path: str, size: int, compressed: bool = False) -> bytes:
    flags = FLAG_DEFLATE if compressed else 0
    return _pack_str(path) + _SIZE.pack(size) + _CODE.pack(flags)


def decode_file_header(payload: bytes) -> Tuple[str, int, bool]:
    """Return ``(path, size, compressed)`` from a ``FILE`` frame."""
    reader = PayloadReader(payload)
    path = reader.read_str()
    size = reader.read_size()
    flags = reader.read_code()
    reader.finish()
    if flags & ~FLAG_DEFLATE:
        raise ProtocolError(f"Unknown FILE flags {flags:#04x}")
    return path, size, bool(flags & FLAG_DEFLATE)


def encode_missing(path: str, reason: str) -> bytes:
    return _pack_str(path) + _pack_str(reason)


def decode_missing(payload: bytes) -> Tuple[str, str]:
    reader = PayloadReader(payload)
    path = reader.read_str()
    reason = reader.read_str()
    reader.finish()
    return path, reason


def encode_error(code: ErrorCode, message: str) -> bytes:
    return _CODE.pack(code) + _pack_str(message)


def decode_error(payload: bytes) -> Tuple[int, str]:
    reader = PayloadReader(payload)
    code = reader.read_code()
    message = reader.read_str()
    reader.finish()
    return code, message


class Connection:
    """Blocking frame I/O over a connected socket."""

    def __init__(self, sock: socket.socket, chunk_size: int = 64 * 1024):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.sock = sock
        self.chunk_size = chunk_size
        self._reader: BinaryIO = sock.makefile("rb")
        self._writer: BinaryIO = sock.makefile("wb")
        self._closed = False

    def send_frame(self, frame_type: FrameType, payload: bytes = b"") -> None:
        try:
            self._writer.write(_FRAME_HEADER.pack(frame_type, len(payload)))
            self._writer.write(payload)
            self._writer.flush()
        except OSError as e:
            raise ConnectionFailureError(f"Failed to send {frame_type.name}: {e}") from e

    def recv_frame(self) -> Frame:
        header = self._read_exact(_FRAME_HEADER.size, ConnectionFailureError)
        raw_type, length = _FRAME_HEADER.unpack(header)
        try:
            frame_type = FrameType(raw_type)
        except ValueError:
            raise ProtocolError(f"Unknown frame type {raw_type}") from None
        if length > MAX_FRAME_SIZE:
            raise ProtocolError(f"{frame_type.name} frame of {length} bytes exceeds limit")
        payload = self._read_exact(length, ConnectionFailureError)
        return Frame(frame_type, payload)

    def send_body(self, source: BinaryIO, size: int, compress: bool = False) -> None:
        """Stream exactly ``size`` bytes from ``source`` in bounded chunks."""
        compressor = zlib.compressobj() if compress else None
        remaining = size
        try:
            while remaining:
                chunk = source.read(min(self.chunk_size, remaining))
                if not chunk:
                    raise TransferInterruptedError(
                        f"Source ended with {remaining} of {size} bytes unsent"
                    )
                remaining -= len(chunk)
                if compressor is None:
                    self._writer.write(chunk)
                else:
                    self._write_block(compressor.compress(chunk))
            if compressor is not None:
                self._write_block(compressor.flush())
                self._writer.write(_COUNT.pack(0))
            self._writer.flush()
        except OSError as e:
            raise ConnectionFailureError(f"Failed to send file body: {e}") from e

    def _write_block(self, data: bytes) -> None:
        # an empty block would read as the terminator
        if data:
            self._writer.write(_COUNT.pack(len(data)))
            self._writer.write(data)

    def iter_body(self, size: int, compressed: bool = False) -> Iterator[bytes]:
        """Yield the ``size`` uncompressed bytes of a body announced by a ``FILE`` frame."""
        if compressed:
            yield from self._iter_deflated(size)
            return

        remaining = size
        while remaining:
            try:
                chunk = self._reader.read(min(self.chunk_size, remaining))
            except OSError as e:
                raise TransferInterruptedError(f"Connection lost mid-file: {e}") from e
            if not chunk:
                raise TransferInterruptedError(
                    f"Connection closed with {remaining} of {size} bytes outstanding"
                )
            remaining -= len(chunk)
            yield chunk

    def _iter_deflated(self, size: int) -> Iterator[bytes]:
        decompressor = zlib.decompressobj()
        produced = 0

        def inflate(data: bytes) -> Iterator[bytes]:
            nonlocal produced
            while True:
                try:
                    chunk = decompressor.decompress(data, self.chunk_size)
                except zlib.error as e:
                    raise ProtocolError(f"Corrupt compressed body: {e}") from e
                if chunk:
                    produced += len(chunk)
                    if produced > size:
                        raise ProtocolError(f"Compressed body inflates past {size} bytes")
                    yield chunk
                data = decompressor.unconsumed_tail
                if not data and not chunk:
                    return

        while True:
            (length,) = _COUNT.unpack(self._read_exact(_COUNT.size, TransferInterruptedError))
            if length == 0:
                break
            if length > MAX_FRAME_SIZE:
                raise ProtocolError(f"Compressed block of {length} bytes exceeds limit")
            yield from inflate(self._read_exact(length, TransferInterruptedError))

        if not decompressor.eof or produced != size:
            raise ProtocolError(
                f"Compressed body ended after {produced} of {size} bytes"
            )

    def _read_exact(self, size: int, error_cls: type) -> bytes:
        try:
            data = self._reader.read(size)
        except socket.timeout as e:
            raise error_cls(f"Timed out waiting for peer: {e}") from e
        except OSError as e:
            raise error_cls(f"Connection lost: {e}") from e
        if len(data) != size:
            raise error_cls(
                "Connection closed by peer" if not data
                else f"Connection closed after {len(data)} of {size} bytes"
            )
        return data

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for stream in (self._writer, self._reader):
            try:
                stream.close()
            except OSError as e:
                logger.debug("Error closing stream: %s", e)
        try:
            self.sock.close()
        except OSError as e:
            logger.debug("Error closing socket: %s", e)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *args) -> None:
        self.close()


__all__ = [
    "FrameType",
    "ErrorCode",
    "Frame",
    "Connection",
    "PayloadReader",
    "encode_hello",
    "decode_hello",
    "encode_request",
    "decode_request",
    "encode_file_header",
    "decode_file_header",
    "encode_missing",
    "decode_missing",
    "encode_error",
    "decode_error",
    "MAX_FRAME_SIZE",
    "FLAG_DEFLATE",
]
