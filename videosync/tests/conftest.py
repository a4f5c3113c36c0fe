#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared fixtures and helpers for videosync tests.

Every test runs against servers bound to an ephemeral localhost port.
"""

from __future__ import annotations

import os
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import pytest

from .. import ClientConfig, ServerConfig, VideoClient, VideoServer

# Configuration (can be overridden via environment variables)
WAIT_TIMEOUT = float(os.getenv("VIDEOSYNC_TEST_TIMEOUT", "5"))
LOCALHOST = "127.0.0.1"


def video_bytes(size: int) -> bytes:
    return (bytes(range(256)) * (size // 256 + 1))[:size]


def write_video(directory: Path, name: str, size: int, mtime_ns: Optional[int] = None) -> Path:
    """Create a file of the given size, optionally with a fixed mtime."""
    path = directory / name
    path.write_bytes(video_bytes(size))
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


def wait_for(predicate: Callable[[], bool], timeout: float = WAIT_TIMEOUT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def unused_port() -> int:
    with socket.socket() as s:
        s.bind((LOCALHOST, 0))
        return s.getsockname()[1]


class FakeServer:
    """
    Scripted stand-in for the real server.

    Each accepted connection is handed to the next script in order; a script
    receives (fake_server, conn, reader) and decides what to send back.
    """

    def __init__(self, *scripts):
        self.sock = socket.create_server((LOCALHOST, 0))
        self.sock.settimeout(WAIT_TIMEOUT)
        self.address = self.sock.getsockname()[:2]
        self.scripts = list(scripts)
        self.commands: list[bytes] = []
        self.connections = 0
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        for script in self.scripts:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            self.connections += 1
            threading.Thread(target=self._run, args=(script, conn), daemon=True).start()

    def _run(self, script, conn: socket.socket):
        with conn:
            reader = conn.makefile("rb")
            try:
                script(self, conn, reader)
            except OSError:
                pass
            finally:
                reader.close()

    def read_command(self, reader) -> bytes:
        line = reader.readline()
        if line:
            self.commands.append(line.strip())
        return line.strip()

    def close(self):
        self.sock.close()


@pytest.fixture
def video_dir(tmp_path: Path) -> Path:
    d = tmp_path / "videos"
    d.mkdir()
    return d


@pytest.fixture
def server(video_dir: Path):
    srv = VideoServer(
        ServerConfig(host=LOCALHOST, port=0, video_dir=str(video_dir), watch_interval=0.05)
    ).start()
    try:
        yield srv
    finally:
        srv.stop()


def make_config(address: tuple[str, int], tmp_path: Path, **overrides) -> ClientConfig:
    host, port = address
    values = dict(
        host=host,
        port=port,
        cache_dir=str(tmp_path / "cache"),
        timeout_secs=2.0,
        retry_delay_secs=0.0,
        connect_on_start=False,
    )
    values.update(overrides)
    return ClientConfig(**values)


@pytest.fixture
def client(server: VideoServer, tmp_path: Path):
    c = VideoClient(make_config(server.address, tmp_path))
    try:
        yield c
    finally:
        c.close()
