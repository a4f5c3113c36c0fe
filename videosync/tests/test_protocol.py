#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command parsing and reply framing.

Usage: pytest videosync/tests/test_protocol.py
"""

import io
import struct

import pytest
import zstandard as zstd

from .. import ABSENT, Command, FileStat, ProtocolError, Request, is_safe_name
from ..protocol import encode_list, read_exact, read_list, read_size, read_stat


def test_parse_commands():
    assert Request.parse(b"LIST\n") == Request(Command.LIST)
    assert Request.parse(b"CHECK intro.mp4\n") == Request(Command.CHECK, "intro.mp4")
    assert Request.parse(b"GET my movie.mp4\r\n") == Request(Command.GET, "my movie.mp4")


@pytest.mark.parametrize(
    "line",
    [b"list\n", b"GET\n", b"CHECK \n", b"DELETE x.mp4\n", b"LIST", b"\xff\xfe\n"],
)
def test_parse_rejects_malformed_lines(line):
    with pytest.raises(ProtocolError):
        Request.parse(line)


def test_parse_rejects_overlong_line():
    with pytest.raises(ProtocolError):
        Request.parse(b"GET " + b"a" * 5000 + b"\n")


def test_request_encoding_is_one_line():
    assert Request.for_list().encode() == b"LIST\n"
    assert Request.for_get("a.mp4").encode() == b"GET a.mp4\n"
    with pytest.raises(ValueError):
        Request.for_check("evil\nLIST")
    with pytest.raises(ValueError):
        Request(Command.LIST, "x")


def test_safe_names():
    assert is_safe_name("movie.mp4")
    assert is_safe_name("..hidden.mp4")
    for name in ("", ".", "..", "../etc/passwd", "a/b.mp4", "a\\b.mp4", "a\x00.mp4"):
        assert not is_safe_name(name)


def test_read_exact_raises_on_short_stream():
    with pytest.raises(EOFError):
        read_exact(io.BytesIO(b"abc"), 4)


def test_stat_reply_normalizes_absent():
    reply = io.BytesIO(struct.pack(">qq", -1, 12345))
    stat = read_stat(reply)
    assert stat.absent
    assert stat == FileStat.missing()
    assert read_size(io.BytesIO(struct.pack(">q", ABSENT))) == ABSENT


def test_list_frame_is_compressed_json():
    frame = encode_list(["a.mp4", "b.mp4"])
    payload_len, orig_len = struct.unpack(">qq", frame[:16])
    assert payload_len == len(frame) - 16
    assert zstd.ZstdDecompressor().decompress(frame[16:]) == b'["a.mp4", "b.mp4"]'
    assert orig_len == len(b'["a.mp4", "b.mp4"]')
    assert read_list(io.BytesIO(frame)) == ["a.mp4", "b.mp4"]


def test_list_reply_with_wrong_shape_is_protocol_error():
    body = b'{"not": "a list"}'
    payload = zstd.ZstdCompressor().compress(body)
    frame = struct.pack(">qq", len(payload), len(body)) + payload
    with pytest.raises(ProtocolError):
        read_list(io.BytesIO(frame))


def test_list_reply_with_garbage_payload_is_protocol_error():
    frame = struct.pack(">qq", 4, 10) + b"junk"
    with pytest.raises(ProtocolError):
        read_list(io.BytesIO(frame))


def test_parse_rejects_carriage_return_inside_name():
    with pytest.raises(ProtocolError):
        Request.parse(b"CHECK a\rb.mp4\n")
