# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Wire commands and binary framing shared by the client and the server."""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

import zstandard as zstd

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
CHUNK_SIZE = 8192
MAX_LINE_LENGTH = 4096
VIDEO_EXTENSION = ".mp4"
ABSENT = -1

_INT = struct.Struct(">q")
_PAIR = struct.Struct(">qq")
_UNSAFE_CHARS = ("/", "\\", "\x00", "\r", "\n")


# --- Exceptions ---


class TransferError(Exception):
    pass


class ProtocolError(TransferError):
    pass


class ConnectionLostError(TransferError):
    pass


class VideoNotFoundError(TransferError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Video not found: {name}")


class RetryExhaustedError(TransferError):
    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts, self.last_error = attempts, last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


class RefreshInProgressError(TransferError):
    pass


class CacheWriteError(TransferError):
    pass


def is_safe_name(name: str) -> bool:
    """A catalog name is a plain file name: no separators, no dot entries."""
    if not name or name in (".", ".."):
        return False
    return not any(c in name for c in _UNSAFE_CHARS)


# --- Commands ---


class Command(Enum):
    LIST = "LIST"
    CHECK = "CHECK"
    GET = "GET"


@dataclass(frozen=True)
class Request:
    """One command line sent from client to server."""

    command: Command
    name: Optional[str] = None

    def __post_init__(self):
        if self.command is Command.LIST:
            if self.name is not None:
                raise ValueError("LIST takes no argument")
        elif self.name is None or "\n" in self.name or "\r" in self.name:
            raise ValueError(f"{self.command.value} needs a single-line name")

    @classmethod
    def for_list(cls) -> Request:
        return cls(Command.LIST)

    @classmethod
    def for_check(cls, name: str) -> Request:
        return cls(Command.CHECK, name)

    @classmethod
    def for_get(cls, name: str) -> Request:
        return cls(Command.GET, name)

    def encode(self) -> bytes:
        if self.name is None:
            return f"{self.command.value}\n".encode()
        return f"{self.command.value} {self.name}\n".encode()

    @classmethod
    def parse(cls, line: bytes) -> Request:
        """Parse a raw command line. Raises ProtocolError for anything else."""
        if len(line) > MAX_LINE_LENGTH or not line.endswith(b"\n"):
            raise ProtocolError("Command line missing terminator or too long")
        try:
            text = line[:-1].decode()
        except UnicodeDecodeError as e:
            raise ProtocolError("Command line is not valid UTF-8") from e
        if text.endswith("\r"):
            text = text[:-1]
        if text == Command.LIST.value:
            return cls(Command.LIST)
        word, sep, name = text.partition(" ")
        if sep and name and word in (Command.CHECK.value, Command.GET.value):
            try:
                return cls(Command(word), name)
            except ValueError as e:
                raise ProtocolError(f"Bad argument: {e}") from e
        raise ProtocolError(f"Unknown command: {text[:64]!r}")


# --- Replies ---


@dataclass(frozen=True)
class FileStat:
    """Size and modification time (milliseconds since the epoch) of a file."""

    size: int
    mtime_ms: int

    @property
    def absent(self) -> bool:
        return self.size == ABSENT

    @classmethod
    def missing(cls) -> FileStat:
        return cls(ABSENT, ABSENT)

    @classmethod
    def from_path(cls, path: Path) -> FileStat:
        st = path.stat()
        return cls(st.st_size, st.st_mtime_ns // 1_000_000)


def read_exact(reader: BinaryIO, n: int) -> bytes:
    """Read exactly n bytes or raise EOFError."""
    buf = bytearray()
    while len(buf) < n:
        chunk = reader.read(n - len(buf))
        if not chunk:
            raise EOFError(f"Stream ended after {len(buf)} of {n} bytes")
        buf.extend(chunk)
    return bytes(buf)


def encode_size(size: int) -> bytes:
    return _INT.pack(size)


def read_size(reader: BinaryIO) -> int:
    return _INT.unpack(read_exact(reader, _INT.size))[0]


def encode_stat(stat: FileStat) -> bytes:
    return _PAIR.pack(stat.size, stat.mtime_ms)


def read_stat(reader: BinaryIO) -> FileStat:
    size, mtime_ms = _PAIR.unpack(read_exact(reader, _PAIR.size))
    if size < 0:
        return FileStat.missing()
    return FileStat(size, mtime_ms)


def encode_list(names: list[str]) -> bytes:
    """Frame a catalog snapshot as (payload_len, original_len) + zstd(JSON)."""
    body = json.dumps(names).encode()
    payload = zstd.ZstdCompressor().compress(body)
    return _PAIR.pack(len(payload), len(body)) + payload


def read_list(reader: BinaryIO) -> list[str]:
    payload_len, orig_size = _PAIR.unpack(read_exact(reader, _PAIR.size))
    if payload_len < 0 or orig_size < 0:
        raise ProtocolError("Negative LIST frame length")
    payload = read_exact(reader, payload_len)
    try:
        body = zstd.ZstdDecompressor().decompress(payload, max_output_size=orig_size)
        names = json.loads(body)
    except (zstd.ZstdError, ValueError) as e:
        raise ProtocolError(f"Undecodable LIST reply: {e}") from e
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ProtocolError("LIST reply is not a list of names")
    return names
