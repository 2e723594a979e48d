"""Sync client: installs a server project's tree into a local directory."""

from __future__ import annotations

import hashlib
import logging
import os
import socket
import tempfile
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple, Union

from ..errors import (
    TRANSIENT_ERRORS,
    ConnectionFailureError,
    IntegrityError,
    InvalidPathError,
    Laj3Error,
    ProtocolError,
    UnknownProjectError,
    WriteFailureError,
)
from .diff import Changeset, diff
from .manifest import CHUNK_SIZE, Dictionary, FileEntry
from .server import DEFAULT_PORT
from .store import deserialize, load_dictionary
from .wire import (
    Connection,
    ErrorCode,
    FrameType,
    decode_error,
    decode_file_header,
    decode_missing,
    encode_hello,
    encode_request,
)

logger = logging.getLogger("laj3.sync.client")

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class ClientSettings:
    """Settings for install operations."""

    timeout: float = 30.0
    retries: int = 3
    chunk_size: int = CHUNK_SIZE
    delete_removed: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ClientSettings":
        raw = config.get("client", {}) if config else {}
        return cls(
            timeout=float(raw.get("timeout", 30.0)),
            retries=int(raw.get("retries", 3)),
            chunk_size=int(raw.get("chunk_size", CHUNK_SIZE)),
            delete_removed=bool(raw.get("delete_removed", False)),
        )


@dataclass(frozen=True)
class InstallTarget:
    """Server address plus the project to install from it."""

    host: str
    port: int
    project: str

    @classmethod
    def parse(cls, raw: str) -> "InstallTarget":
        """Parse ``host:port/project``; the port defaults to 7878."""
        address, sep, project = raw.partition("/")
        project = project.strip("/")
        if not sep or not project:
            raise InvalidPathError(
                f"Install target '{raw}' must look like host:port/project"
            )

        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            port_text = rest[1:] if rest.startswith(":") else ""
        else:
            host, _, port_text = address.rpartition(":") if ":" in address else (address, "", "")
        if not host:
            raise InvalidPathError(f"Install target '{raw}' has no host")

        try:
            port = int(port_text) if port_text else DEFAULT_PORT
        except ValueError:
            raise InvalidPathError(f"Install target '{raw}' has an invalid port") from None
        if not 0 < port < 65536:
            raise InvalidPathError(f"Install target '{raw}' has an invalid port")

        return cls(host=host, port=port, project=project)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.address}/{self.project}"


@dataclass
class InstallResult:
    """Outcome of an install run."""

    project: str
    changeset: Changeset = field(default_factory=Changeset)
    written: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    bytes_received: int = 0
    reference: Optional[Dictionary] = None

    @property
    def success(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        parts = [self.changeset.summary()]
        if self.written:
            parts.append(f"{len(self.written)} written")
        if self.deleted:
            parts.append(f"{len(self.deleted)} deleted")
        if self.kept:
            parts.append(f"{len(self.kept)} removed files kept")
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        return "; ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "success": self.success,
            "added": list(self.changeset.added),
            "modified": list(self.changeset.modified),
            "removed": list(self.changeset.removed),
            "written": self.written,
            "failed": self.failed,
            "deleted": self.deleted,
            "kept": self.kept,
            "bytes_received": self.bytes_received,
        }


def load_local_dictionary(path: Optional[Union[str, Path]]) -> Dictionary:
    """Load the precomputed local dictionary, or start from an empty one."""
    if path is None:
        logger.info("No local dictionary supplied; treating destination as empty")
        return Dictionary()
    return load_dictionary(path)


class SyncClient:
    """Installs a project from a sync server into ``dest_root``."""

    def __init__(
        self,
        dest_root: Union[str, Path],
        settings: Optional[ClientSettings] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        # _resolve compares against an absolute root
        self.dest_root = Path(os.path.abspath(dest_root))
        self.settings = settings or ClientSettings()
        self.progress_callback = progress_callback

    def fetch_dictionary(self, target: InstallTarget) -> Dictionary:
        """Fetch the reference dictionary without transferring any file."""
        conn, reference = self._open_session(target)
        try:
            self._say_goodbye(conn)
        finally:
            conn.close()
        return reference

    def install(self, target: InstallTarget, local: Dictionary) -> InstallResult:
        """Bring ``dest_root`` in line with the server's reference tree.

        Connection, handshake and dictionary errors on the first connection
        are raised. Per-file problems are retried where transient and then
        recorded in the returned result.
        """
        conn: Optional[Connection]
        conn, reference = self._open_session(target)
        result = InstallResult(project=target.project, reference=reference)

        try:
            changeset = diff(reference, local)
            result.changeset = changeset
            logger.info("Changeset for %s: %s", target, changeset.summary())

            transfer = set(changeset.to_transfer)
            wanted: List[FileEntry] = []
            for entry in reference:
                if entry.path not in transfer:
                    continue
                try:
                    self._resolve(entry.path)
                except InvalidPathError as e:
                    result.failed[entry.path] = str(e)
                    continue
                wanted.append(entry)

            if wanted:
                conn = self._transfer_all(target, conn, wanted, result)
            if conn is not None:
                self._say_goodbye(conn)
        finally:
            if conn is not None:
                conn.close()

        self._handle_removed(changeset.removed, result)

        if result.success:
            logger.info("Install of %s complete: %s", target, result.summary())
        else:
            logger.warning("Install of %s incomplete: %s", target, result.summary())
        return result

    def refreshed_dictionary(self, local: Dictionary, result: InstallResult) -> Dictionary:
        """Describe the destination after ``result``, assuming ``local`` was accurate."""
        if result.reference is None:
            return local

        entries: List[FileEntry] = []
        done = set(result.written) | set(result.changeset.unchanged)
        for entry in result.reference:
            if entry.path in done:
                entries.append(entry)
            elif entry.path in local:
                entries.append(local.get(entry.path))  # type: ignore[arg-type]
        for path in result.changeset.removed:
            if path not in result.deleted:
                entries.append(local.get(path))  # type: ignore[arg-type]
        return Dictionary(tuple(entries))

    def _open_session(self, target: InstallTarget) -> Tuple[Connection, Dictionary]:
        """Connect, send the project name and receive the reference dictionary."""
        try:
            sock = socket.create_connection(
                (target.host, target.port), timeout=self.settings.timeout
            )
        except OSError as e:
            raise ConnectionFailureError(f"Cannot connect to {target.address}: {e}") from e

        conn = Connection(sock, chunk_size=self.settings.chunk_size)
        try:
            conn.send_frame(FrameType.HELLO, encode_hello(target.project))
            frame = conn.recv_frame()
            if frame.type == FrameType.ERROR:
                code, message = decode_error(frame.payload)
                if code == ErrorCode.UNKNOWN_PROJECT:
                    raise UnknownProjectError(message)
                raise ProtocolError(f"Server error: {message}")
            if frame.type != FrameType.DICTIONARY:
                raise ProtocolError(f"Expected DICTIONARY, got {frame.type.name}")
            reference = deserialize(frame.payload)
        except BaseException:
            conn.close()
            raise

        logger.info(
            "Connected to %s; reference has %d files", target, len(reference)
        )
        return conn, reference

    def _transfer_all(
        self,
        target: InstallTarget,
        conn: Optional[Connection],
        entries: List[FileEntry],
        result: InstallResult,
    ) -> Optional[Connection]:
        """Request ``entries`` and commit each file, reconnecting on transient errors."""
        pending: Deque[FileEntry] = deque(entries)
        attempts: Dict[str, int] = {}

        while pending:
            if conn is None:
                try:
                    conn, fresh = self._open_session(target)
                except TRANSIENT_ERRORS as e:
                    self._note_attempt(pending, attempts, e, result)
                    continue
                except Laj3Error as e:
                    self._fail_all(pending, f"reconnect failed: {e}", result)
                    break
                self._drop_changed(pending, fresh, result)
                if not pending:
                    break

            try:
                conn.send_frame(
                    FrameType.REQUEST, encode_request([entry.path for entry in pending])
                )
                while pending:
                    self._receive_one(conn, pending[0], result)
                    pending.popleft()
            except TRANSIENT_ERRORS as e:
                conn.close()
                conn = None
                self._note_attempt(pending, attempts, e, result)
            except ProtocolError as e:
                logger.error("Protocol error from %s: %s", target, e)
                conn.close()
                conn = None
                self._fail_all(pending, f"protocol error: {e}", result)

        return conn

    def _note_attempt(
        self,
        pending: Deque[FileEntry],
        attempts: Dict[str, int],
        error: Exception,
        result: InstallResult,
    ) -> None:
        path = pending[0].path
        attempts[path] = attempts.get(path, 0) + 1
        if attempts[path] > self.settings.retries:
            logger.error("Giving up on %s after %d attempts: %s", path, attempts[path], error)
            result.failed[path] = str(error)
            pending.popleft()
        else:
            logger.warning(
                "Transfer of %s failed (attempt %d/%d): %s",
                path, attempts[path], self.settings.retries + 1, error,
            )

    def _fail_all(self, pending: Deque[FileEntry], reason: str, result: InstallResult) -> None:
        while pending:
            result.failed[pending.popleft().path] = reason

    def _drop_changed(
        self,
        pending: Deque[FileEntry],
        fresh: Dictionary,
        result: InstallResult,
    ) -> None:
        """Fail pending files whose reference entry changed between connections."""
        for entry in list(pending):
            if fresh.get(entry.path) != entry:
                pending.remove(entry)
                result.failed[entry.path] = "reference changed on server during install"

    def _receive_one(self, conn: Connection, entry: FileEntry, result: InstallResult) -> None:
        frame = conn.recv_frame()

        if frame.type == FrameType.MISSING:
            path, reason = decode_missing(frame.payload)
            self._expect_path(entry.path, path)
            logger.error("Server could not provide %s: %s", path, reason)
            result.failed[path] = reason
            return
        if frame.type == FrameType.ERROR:
            _, message = decode_error(frame.payload)
            raise ProtocolError(f"Server error: {message}")
        if frame.type != FrameType.FILE:
            raise ProtocolError(f"Expected FILE, got {frame.type.name}")

        path, size, compressed = decode_file_header(frame.payload)
        self._expect_path(entry.path, path)

        try:
            self._write_file(conn.iter_body(size, compressed), entry, size)
        except (WriteFailureError, IntegrityError) as e:
            logger.error("Could not install %s: %s", entry.path, e)
            result.failed[entry.path] = str(e)
            return

        result.written.append(entry.path)
        result.bytes_received += size
        logger.debug("Installed %s (%d bytes%s)", entry.path, size, ", deflated" if compressed else "")

    @staticmethod
    def _expect_path(expected: str, received: str) -> None:
        if expected != received:
            raise ProtocolError(f"Expected response for {expected!r}, got {received!r}")

    def _write_file(self, body: Iterator[bytes], entry: FileEntry, size: int) -> None:
        """Receive a file body into a temporary sibling and rename it into place.

        The body is always consumed in full so the stream stays aligned even
        when the local write fails.
        """
        target = self._resolve(entry.path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".part"
            )
        except OSError as e:
            for _ in body:
                pass
            raise WriteFailureError(f"Cannot create temporary file for {entry.path}: {e}") from e

        tmp_path = Path(tmp_name)
        committed = False
        try:
            hasher = hashlib.sha256()
            write_error = self._stream_body(body, fd, entry.path, size, hasher)
            if write_error is not None:
                raise WriteFailureError(f"Cannot write {entry.path}: {write_error}")

            if size != entry.size or hasher.hexdigest() != entry.fingerprint:
                raise IntegrityError(
                    f"{entry.path} does not match its dictionary entry "
                    f"({size} bytes received, {entry.size} expected)"
                )

            try:
                if entry.mtime_ns is not None:
                    os.utime(tmp_path, ns=(entry.mtime_ns, entry.mtime_ns))
                os.replace(tmp_path, target)
            except OSError as e:
                raise WriteFailureError(f"Cannot commit {entry.path}: {e}") from e
            committed = True
        finally:
            if not committed:
                tmp_path.unlink(missing_ok=True)

    def _stream_body(
        self,
        body: Iterator[bytes],
        fd: int,
        path: str,
        size: int,
        hasher: Any,
    ) -> Optional[OSError]:
        """Copy the body into ``fd``; return the first local write error, if any."""
        write_error: Optional[OSError] = None
        received = 0
        out = os.fdopen(fd, "wb")
        try:
            for chunk in body:
                hasher.update(chunk)
                received += len(chunk)
                if write_error is None:
                    try:
                        out.write(chunk)
                    except OSError as e:
                        write_error = e
                self._report_progress(path, received, size)
            if write_error is None:
                try:
                    out.flush()
                    os.fsync(out.fileno())
                except OSError as e:
                    write_error = e
        finally:
            try:
                out.close()
            except OSError as e:
                write_error = write_error or e
        return write_error

    def _handle_removed(self, removed: Tuple[str, ...], result: InstallResult) -> None:
        for path in removed:
            if not self.settings.delete_removed:
                result.kept.append(path)
                continue
            try:
                self._resolve(path).unlink()
            except FileNotFoundError:
                logger.debug("Removed file %s was already absent", path)
            except (OSError, InvalidPathError) as e:
                logger.error("Could not delete %s: %s", path, e)
                result.failed[path] = f"delete failed: {e}"
                continue
            result.deleted.append(path)
            logger.debug("Deleted %s", path)

        if result.kept:
            logger.info(
                "Kept %d files that are no longer on the server (deletion disabled)",
                len(result.kept),
            )

    def _resolve(self, path: str) -> Path:
        """Map a dictionary path into ``dest_root``, refusing escapes."""
        root = os.path.normpath(self.dest_root)
        candidate = os.path.normpath(os.path.join(root, *path.split("/")))
        if os.path.isabs(path) or os.path.commonpath([root, candidate]) != root or candidate == root:
            raise InvalidPathError(f"Path {path!r} escapes the destination directory")
        return Path(candidate)

    def _say_goodbye(self, conn: Connection) -> None:
        try:
            conn.send_frame(FrameType.BYE)
        except ConnectionFailureError as e:
            logger.debug("Could not send BYE: %s", e)

    def _report_progress(self, path: str, received: int, total: int) -> None:
        """Report progress if callback is configured."""
        if self.progress_callback:
            self.progress_callback(path, received, total)


__all__ = [
    "ClientSettings",
    "InstallTarget",
    "InstallResult",
    "SyncClient",
    "load_local_dictionary",
]
