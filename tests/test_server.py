"""Tests for the sync server, driven by a raw protocol client."""

from __future__ import annotations

import select
import socket
from pathlib import Path

import pytest

from conftest import make_project
from laj3.errors import ConnectionFailureError, InvalidPathError, UnknownProjectError
from laj3.sync import ProjectRegistry, ServerSettings, SyncServer, load_project, save_dictionary
from laj3.sync.store import deserialize
from laj3.sync.wire import (
    Connection,
    ErrorCode,
    FrameType,
    decode_error,
    decode_file_header,
    decode_missing,
    encode_hello,
    encode_request,
)

FILES = {"a.txt": b"alpha", "sub/b.txt": b"bravo" * 1000}


def _connect(address) -> Connection:
    sock = socket.create_connection(address, timeout=5)
    return Connection(sock)


def test_unknown_project_gets_error_and_close(tmp_path: Path, serve):
    address = serve(make_project(tmp_path, FILES))

    with _connect(address) as conn:
        conn.send_frame(FrameType.HELLO, encode_hello("nope"))
        frame = conn.recv_frame()
        assert frame.type is FrameType.ERROR
        code, message = decode_error(frame.payload)
        assert code == ErrorCode.UNKNOWN_PROJECT
        assert "nope" in message
        with pytest.raises(ConnectionFailureError):
            conn.recv_frame()


def test_serves_dictionary_then_files_in_request_order(tmp_path: Path, serve):
    project = make_project(tmp_path, FILES)
    address = serve(project)

    with _connect(address) as conn:
        conn.send_frame(FrameType.HELLO, encode_hello("demo"))
        frame = conn.recv_frame()
        assert frame.type is FrameType.DICTIONARY
        assert deserialize(frame.payload) == project.dictionary

        conn.send_frame(FrameType.REQUEST, encode_request(["sub/b.txt", "ghost.txt", "a.txt"]))

        frame = conn.recv_frame()
        assert frame.type is FrameType.FILE
        path, size, compressed = decode_file_header(frame.payload)
        assert path == "sub/b.txt"
        assert compressed
        assert b"".join(conn.iter_body(size, compressed)) == FILES["sub/b.txt"]

        frame = conn.recv_frame()
        assert frame.type is FrameType.MISSING
        assert decode_missing(frame.payload)[0] == "ghost.txt"

        frame = conn.recv_frame()
        path, size, compressed = decode_file_header(frame.payload)
        assert path == "a.txt"
        assert b"".join(conn.iter_body(size, compressed)) == b"alpha"

        conn.send_frame(FrameType.BYE)
        with pytest.raises(ConnectionFailureError):
            conn.recv_frame()


def test_file_removed_from_disk_is_reported_missing(tmp_path: Path, serve):
    project = make_project(tmp_path, FILES)
    (project.root / "a.txt").unlink()
    address = serve(project)

    with _connect(address) as conn:
        conn.send_frame(FrameType.HELLO, encode_hello("demo"))
        conn.recv_frame()
        conn.send_frame(FrameType.REQUEST, encode_request(["a.txt"]))
        frame = conn.recv_frame()
        assert frame.type is FrameType.MISSING
        path, reason = decode_missing(frame.payload)
        assert path == "a.txt"
        assert "unreadable" in reason


def test_wrong_first_frame_is_protocol_error(tmp_path: Path, serve):
    address = serve(make_project(tmp_path, FILES))

    with _connect(address) as conn:
        conn.send_frame(FrameType.REQUEST, encode_request(["a.txt"]))
        frame = conn.recv_frame()
        assert frame.type is FrameType.ERROR
        assert decode_error(frame.payload)[0] == ErrorCode.PROTOCOL


def test_idle_connection_is_closed(tmp_path: Path, serve):
    address = serve(make_project(tmp_path, FILES), idle_timeout=0.2)

    with _connect(address) as conn:
        conn.send_frame(FrameType.HELLO, encode_hello("demo"))
        assert conn.recv_frame().type is FrameType.DICTIONARY
        with pytest.raises(ConnectionFailureError):
            conn.recv_frame()


def test_concurrent_sessions_share_the_registry(tmp_path: Path, serve):
    address = serve(make_project(tmp_path, FILES))

    first, second = _connect(address), _connect(address)
    try:
        for conn in (first, second):
            conn.send_frame(FrameType.HELLO, encode_hello("demo"))
        for conn in (second, first):
            assert conn.recv_frame().type is FrameType.DICTIONARY
    finally:
        first.close()
        second.close()



def test_uncompressed_bodies_when_compression_is_off(tmp_path: Path, serve):
    address = serve(make_project(tmp_path, FILES), compress=False)

    with _connect(address) as conn:
        conn.send_frame(FrameType.HELLO, encode_hello("demo"))
        conn.recv_frame()
        conn.send_frame(FrameType.REQUEST, encode_request(["sub/b.txt"]))
        path, size, compressed = decode_file_header(conn.recv_frame().payload)
        assert (path, size, compressed) == ("sub/b.txt", len(FILES["sub/b.txt"]), False)
        assert b"".join(conn.iter_body(size)) == FILES["sub/b.txt"]


def test_sessions_beyond_max_connections_wait_for_a_free_worker(tmp_path: Path, serve):
    address = serve(make_project(tmp_path, FILES), max_connections=1)

    first, second = _connect(address), _connect(address)
    try:
        for conn in (first, second):
            conn.send_frame(FrameType.HELLO, encode_hello("demo"))
        assert first.recv_frame().type is FrameType.DICTIONARY

        readable, _, _ = select.select([second.sock], [], [], 0.3)
        assert readable == []

        first.close()
        assert second.recv_frame().type is FrameType.DICTIONARY
    finally:
        first.close()
        second.close()


def test_server_rejects_zero_max_connections(tmp_path: Path):
    registry = ProjectRegistry([make_project(tmp_path, FILES)])

    with pytest.raises(ValueError):
        SyncServer(registry, ServerSettings(host="127.0.0.1", port=0, max_connections=0))

def test_registry_resolution(tmp_path: Path):
    demo = make_project(tmp_path, FILES)
    other = make_project(tmp_path, {"x": b"x"}, name="other")

    registry = ProjectRegistry([other, demo])

    assert registry.names == ("demo", "other")
    assert registry.resolve("demo") is demo
    assert "other" in registry
    with pytest.raises(UnknownProjectError):
        registry.resolve("Demo")
    with pytest.raises(ValueError):
        ProjectRegistry([demo, demo])


def test_load_project_checks_root(tmp_path: Path):
    project = make_project(tmp_path, FILES)
    dict_path = tmp_path / "demo.dict"
    save_dictionary(project.dictionary, dict_path)

    loaded = load_project("demo", project.root, dict_path)
    assert loaded.dictionary == project.dictionary

    with pytest.raises(InvalidPathError):
        load_project("demo", tmp_path / "missing", dict_path)
