"""Tests for frame encoding over a socket pair."""

from __future__ import annotations

import io
import socket
import struct

import pytest

from laj3.errors import ConnectionFailureError, ProtocolError, TransferInterruptedError
from laj3.sync.wire import (
    FLAG_DEFLATE,
    Connection,
    FrameType,
    decode_file_header,
    decode_request,
    encode_file_header,
    encode_request,
)


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    left.settimeout(5)
    right.settimeout(5)
    a, b = Connection(left, chunk_size=4), Connection(right, chunk_size=4)
    yield a, b
    a.close()
    b.close()


def test_frames_and_chunked_body(pair):
    sender, receiver = pair
    body = b"0123456789abcdef!"

    sender.send_frame(FrameType.FILE, encode_file_header("dir/a.bin", len(body)))
    sender.send_body(io.BytesIO(body), len(body))

    frame = receiver.recv_frame()
    assert frame.type is FrameType.FILE
    assert decode_file_header(frame.payload) == ("dir/a.bin", len(body), False)
    size = len(body)

    chunks = list(receiver.iter_body(size))
    assert b"".join(chunks) == body
    assert max(len(chunk) for chunk in chunks) <= 4


def test_request_paths_keep_order():
    paths = ["z", "a", "ünï/cödé"]

    assert decode_request(encode_request(paths)) == paths


def test_closed_peer_raises_connection_failure(pair):
    sender, receiver = pair
    sender.close()

    with pytest.raises(ConnectionFailureError):
        receiver.recv_frame()


def test_short_body_raises_transfer_interrupted(pair):
    sender, receiver = pair
    sender.send_frame(FrameType.FILE, encode_file_header("a", 10))
    sender.sock.sendall(b"1234")
    sender.close()

    frame = receiver.recv_frame()
    _, size, _ = decode_file_header(frame.payload)
    with pytest.raises(TransferInterruptedError):
        list(receiver.iter_body(size))


def test_unknown_frame_type_is_protocol_error(pair):
    sender, receiver = pair
    sender.sock.sendall(struct.pack(">BI", 99, 0))

    with pytest.raises(ProtocolError):
        receiver.recv_frame()


def test_malformed_payload_is_protocol_error():
    with pytest.raises(ProtocolError):
        decode_request(b"\x00\x00\x00\x02\x00\x01a")


def test_deflated_body_inflates_to_declared_size(pair):
    sender, receiver = pair
    body = b"laj3 " * 5000

    sender.send_frame(FrameType.FILE, encode_file_header("big.txt", len(body), compressed=True))
    sender.send_body(io.BytesIO(body), len(body), compress=True)

    path, size, compressed = decode_file_header(receiver.recv_frame().payload)
    assert (path, size, compressed) == ("big.txt", len(body), True)
    chunks = list(receiver.iter_body(size, compressed))
    assert b"".join(chunks) == body
    assert max(len(chunk) for chunk in chunks) <= 4


def test_deflated_empty_body(pair):
    sender, receiver = pair
    sender.send_body(io.BytesIO(b""), 0, compress=True)

    assert list(receiver.iter_body(0, compressed=True)) == []


def test_deflated_body_longer_than_declared_is_protocol_error(pair):
    sender, receiver = pair
    body = b"x" * 64
    sender.send_body(io.BytesIO(body), len(body), compress=True)

    with pytest.raises(ProtocolError):
        list(receiver.iter_body(10, compressed=True))


def test_corrupt_deflated_block_is_protocol_error(pair):
    sender, receiver = pair
    sender.sock.sendall(struct.pack(">I", 4) + b"junk" + struct.pack(">I", 0))

    with pytest.raises(ProtocolError):
        list(receiver.iter_body(4, compressed=True))


def test_deflated_stream_cut_mid_block_is_transfer_interrupted(pair):
    sender, receiver = pair
    sender.sock.sendall(struct.pack(">I", 100) + b"\x78\x9c")
    sender.close()

    with pytest.raises(TransferInterruptedError):
        list(receiver.iter_body(50, compressed=True))


def test_unknown_file_flags_are_protocol_error():
    payload = encode_file_header("a", 1)[:-1] + bytes([FLAG_DEFLATE | 0x80])

    with pytest.raises(ProtocolError):
        decode_file_header(payload)


@pytest.mark.parametrize("chunk_size", [0, -1])
def test_connection_rejects_non_positive_chunk_size(chunk_size):
    left, right = socket.socketpair()
    try:
        with pytest.raises(ValueError):
            Connection(left, chunk_size=chunk_size)
    finally:
        left.close()
        right.close()
