"""Shared fixtures: file trees and an in-process sync server."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple

import pytest

from laj3.sync import Project, ProjectRegistry, ServerSettings, SyncServer, build_dictionary


def write_tree(root: Path, files: Dict[str, bytes]) -> Path:
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    return root


def make_project(tmp_path: Path, files: Dict[str, bytes], name: str = "demo") -> Project:
    root = write_tree(tmp_path / "server" / name, files)
    root.mkdir(parents=True, exist_ok=True)
    return Project(name=name, root=root, dictionary=build_dictionary(root, recursive=True))


def part_files(root: Path) -> List[Path]:
    return [path for path in root.rglob("*.part")]


@pytest.fixture(autouse=True)
def _reset_laj3_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("laj3")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def serve() -> Iterator:
    """Start a server on an ephemeral port; returns (host, port)."""

    running: List[Tuple[SyncServer, threading.Thread]] = []

    def _serve(*projects: Project, **overrides: Any) -> Tuple[str, int]:
        settings = replace(ServerSettings(host="127.0.0.1", port=0, idle_timeout=5.0), **overrides)
        server = SyncServer(ProjectRegistry(projects), settings)
        thread = threading.Thread(
            target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True
        )
        thread.start()
        running.append((server, thread))
        return server.address

    yield _serve

    for server, thread in running:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)
