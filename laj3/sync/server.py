"""Sync server: serves project dictionaries and file bytes over TCP."""

from __future__ import annotations

import logging
import os
import socketserver
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from ..errors import (
    ConnectionFailureError,
    InvalidPathError,
    ProtocolError,
    TransferInterruptedError,
    UnknownProjectError,
)
from .manifest import CHUNK_SIZE, Dictionary
from .store import load_dictionary, serialize
from .wire import (
    Connection,
    ErrorCode,
    FrameType,
    decode_hello,
    decode_request,
    encode_error,
    encode_file_header,
    encode_missing,
)

logger = logging.getLogger("laj3.sync.server")

DEFAULT_PORT = 7878
DEFAULT_MAX_CONNECTIONS = 10


class SessionState(str, Enum):
    """Lifecycle of one client connection."""
    LISTENING = "listening"
    HANDSHAKE = "handshake"
    SERVING_DICTIONARY = "serving_dictionary"
    SERVING_FILES = "serving_files"
    CLOSED = "closed"


@dataclass(frozen=True)
class Project:
    """A named tree exposed for synchronization."""

    name: str
    root: Path
    dictionary: Dictionary
    serialized: bytes = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "serialized", serialize(self.dictionary))


class ProjectRegistry:
    """Read-only mapping of project names to projects.

    Built once at startup and shared by every connection handler.
    """

    def __init__(self, projects: Iterable[Project] = ()):
        by_name: Dict[str, Project] = {}
        for project in projects:
            if project.name in by_name:
                raise ValueError(f"Project '{project.name}' is registered twice")
            by_name[project.name] = project
        self._projects = MappingProxyType(by_name)

    def resolve(self, name: str) -> Project:
        try:
            return self._projects[name]
        except KeyError:
            raise UnknownProjectError(f"Unknown project '{name}'") from None

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._projects))

    def __contains__(self, name: object) -> bool:
        return name in self._projects

    def __len__(self) -> int:
        return len(self._projects)


def load_project(
    name: str,
    root: Union[str, Path],
    dictionary_path: Union[str, Path],
) -> Project:
    """Load a project's dictionary file and check its root directory."""
    root_path = Path(root).expanduser()
    if not root_path.is_dir():
        raise InvalidPathError(f"Project root '{root_path}' is not a directory")
    dictionary = load_dictionary(Path(dictionary_path).expanduser())
    logger.info(
        "Loaded project '%s' from %s (%d files)", name, root_path, len(dictionary)
    )
    return Project(name=name, root=root_path, dictionary=dictionary)


@dataclass
class ServerSettings:
    """Settings for the sync server."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    idle_timeout: float = 60.0
    chunk_size: int = CHUNK_SIZE
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    compress: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ServerSettings":
        raw = config.get("server", {}) if config else {}
        return cls(
            host=str(raw.get("host", "127.0.0.1")),
            port=int(raw.get("port", DEFAULT_PORT)),
            idle_timeout=float(raw.get("idle_timeout", 60.0)),
            chunk_size=int(raw.get("chunk_size", CHUNK_SIZE)),
            max_connections=int(raw.get("max_connections", DEFAULT_MAX_CONNECTIONS)),
            compress=bool(raw.get("compress", True)),
        )


class ServerSession:
    """Protocol state machine for a single client connection."""

    def __init__(
        self,
        registry: ProjectRegistry,
        conn: Connection,
        peer: str,
        compress: bool = True,
    ):
        self.registry = registry
        self.conn = conn
        self.peer = peer
        self.compress = compress
        self.state = SessionState.LISTENING
        self.project: Optional[Project] = None
        self.files_sent = 0
        self.bytes_sent = 0

    def _set_state(self, state: SessionState) -> None:
        logger.debug("%s: %s -> %s", self.peer, self.state.value, state.value)
        self.state = state

    def run(self) -> None:
        self._set_state(SessionState.HANDSHAKE)
        try:
            project = self.project = self._handshake()

            self._set_state(SessionState.SERVING_DICTIONARY)
            self.conn.send_frame(FrameType.DICTIONARY, project.serialized)

            self._set_state(SessionState.SERVING_FILES)
            self._serve_requests(project)
        except UnknownProjectError as e:
            logger.warning("%s: %s", self.peer, e)
            self._send_error(ErrorCode.UNKNOWN_PROJECT, str(e))
        except ProtocolError as e:
            logger.warning("%s: protocol error: %s", self.peer, e)
            self._send_error(ErrorCode.PROTOCOL, str(e))
        except (ConnectionFailureError, TransferInterruptedError) as e:
            logger.info("%s: connection ended: %s", self.peer, e)
        finally:
            self._set_state(SessionState.CLOSED)
            logger.info(
                "%s: session closed (%d files, %d bytes sent)",
                self.peer, self.files_sent, self.bytes_sent,
            )

    def _handshake(self) -> Project:
        frame = self.conn.recv_frame()
        if frame.type != FrameType.HELLO:
            raise ProtocolError(f"Expected HELLO, got {frame.type.name}")
        name = decode_hello(frame.payload)
        project = self.registry.resolve(name)
        logger.info("%s: serving project '%s'", self.peer, name)
        return project

    def _serve_requests(self, project: Project) -> None:
        while True:
            frame = self.conn.recv_frame()
            if frame.type == FrameType.BYE:
                logger.debug("%s: client signalled completion", self.peer)
                return
            if frame.type != FrameType.REQUEST:
                raise ProtocolError(f"Expected REQUEST or BYE, got {frame.type.name}")
            for path in decode_request(frame.payload):
                self._serve_file(project, path)

    def _serve_file(self, project: Project, path: str) -> None:
        if path not in project.dictionary:
            logger.warning("%s: requested unknown path %s", self.peer, path)
            self.conn.send_frame(
                FrameType.MISSING, encode_missing(path, "not in project dictionary")
            )
            return

        file_path = project.root / path
        try:
            f = open(file_path, "rb")
        except OSError as e:
            logger.error("%s: cannot open %s: %s", self.peer, file_path, e)
            self.conn.send_frame(
                FrameType.MISSING, encode_missing(path, f"unreadable on server: {e.strerror}")
            )
            return

        with f:
            size = os.fstat(f.fileno()).st_size
            self.conn.send_frame(
                FrameType.FILE, encode_file_header(path, size, compressed=self.compress)
            )
            self.conn.send_body(f, size, compress=self.compress)

        self.files_sent += 1
        self.bytes_sent += size
        logger.debug("%s: sent %s (%d bytes)", self.peer, path, size)

    def _send_error(self, code: ErrorCode, message: str) -> None:
        try:
            self.conn.send_frame(FrameType.ERROR, encode_error(code, message))
        except ConnectionFailureError as e:
            logger.debug("%s: could not deliver error: %s", self.peer, e)


class _SessionHandler(socketserver.BaseRequestHandler):
    server: "SyncServer"

    def setup(self) -> None:
        self.request.settimeout(self.server.settings.idle_timeout)
        self.conn = Connection(self.request, chunk_size=self.server.settings.chunk_size)

    def handle(self) -> None:
        peer = "%s:%s" % self.client_address[:2]
        logger.info("Connection established from %s", peer)
        ServerSession(
            self.server.registry, self.conn, peer, compress=self.server.settings.compress
        ).run()

    def finish(self) -> None:
        self.conn.close()


class SyncServer(socketserver.TCPServer):
    """TCP server running sessions on a pool of ``max_connections`` workers.

    Connections accepted while every worker is busy wait in the pool's queue;
    their idle timeout starts once a worker picks them up.
    """

    allow_reuse_address = True

    def __init__(self, registry: ProjectRegistry, settings: Optional[ServerSettings] = None):
        self.registry = registry
        self.settings = settings or ServerSettings()
        if self.settings.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        super().__init__((self.settings.host, self.settings.port), _SessionHandler)
        self._workers = ThreadPoolExecutor(
            max_workers=self.settings.max_connections,
            thread_name_prefix="laj3-session",
        )

    @property
    def address(self) -> Tuple[str, int]:
        host, port = self.server_address[:2]
        return str(host), int(port)

    def serve_forever(self, poll_interval: float = 0.5) -> None:
        host, port = self.address
        logger.info(
            "Listening on %s:%d with projects: %s (%d workers)",
            host, port, ", ".join(self.registry.names) or "(none)",
            self.settings.max_connections,
        )
        super().serve_forever(poll_interval)

    def process_request(self, request, client_address) -> None:
        self._workers.submit(self._process_request_worker, request, client_address)

    def _process_request_worker(self, request, client_address) -> None:
        try:
            self.finish_request(request, client_address)
        except Exception:
            self.handle_error(request, client_address)
        finally:
            self.shutdown_request(request)

    def handle_error(self, request, client_address) -> None:
        logger.exception("Unhandled error while serving %s", client_address)

    def server_close(self) -> None:
        super().server_close()
        self._workers.shutdown(wait=False)


__all__ = [
    "SessionState",
    "Project",
    "ProjectRegistry",
    "ServerSettings",
    "ServerSession",
    "SyncServer",
    "load_project",
    "DEFAULT_PORT",
    "DEFAULT_MAX_CONNECTIONS",
]
