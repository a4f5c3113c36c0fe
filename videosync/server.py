# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Catalog server.

Usage:
    from videosync.server import ServerConfig, VideoServer

    with VideoServer(ServerConfig(video_dir="videos", port=8080)).start():
        ...  # clients connect, LIST / CHECK / GET

    # or, blocking:
    VideoServer(ServerConfig.from_env()).serve_forever()
"""

from __future__ import annotations

import itertools
import logging
import os
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

from .protocol import (
    ABSENT,
    CHUNK_SIZE,
    DEFAULT_PORT,
    MAX_LINE_LENGTH,
    VIDEO_EXTENSION,
    Command,
    FileStat,
    ProtocolError,
    Request,
    encode_list,
    encode_size,
    encode_stat,
    is_safe_name,
)

logger = logging.getLogger(__name__)

ACCEPT_POLL_SECS = 0.5


@dataclass
class ServerConfig:
    """Where to listen and which directory to serve."""

    host: str = ""
    port: int = DEFAULT_PORT
    video_dir: str = "videos"
    extension: str = VIDEO_EXTENSION
    watch_interval: float = 1.0

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            host=os.getenv("VIDEOSYNC_BIND", ""),
            port=int(os.getenv("VIDEOSYNC_PORT", str(DEFAULT_PORT))),
            video_dir=os.getenv("VIDEOSYNC_VIDEO_DIR", "videos"),
            watch_interval=float(os.getenv("VIDEOSYNC_WATCH_INTERVAL", "1.0")),
        )


# --- Catalog ---


class VideoCatalog:
    """The authoritative, lock-protected list of downloadable file names."""

    def __init__(self, directory: str | Path, extension: str = VIDEO_EXTENSION):
        self.directory = Path(directory)
        self.extension = extension.lower()
        self._lock = threading.Lock()
        self._names: list[str] = []
        self.directory.mkdir(parents=True, exist_ok=True)
        self.refresh()

    def refresh(self) -> bool:
        """
        Rescan the directory and replace the whole catalog.

        On a scan failure the previous snapshot is kept, so a transient I/O
        error never shows up to clients as an empty catalog. Returns whether
        the catalog was replaced.
        """
        try:
            with os.scandir(self.directory) as entries:
                names = sorted(
                    e.name
                    for e in entries
                    if e.is_file() and e.name.lower().endswith(self.extension)
                )
        except OSError as e:
            logger.warning("Could not scan %s, keeping previous catalog: %s", self.directory, e)
            return False
        with self._lock:
            self._names = names
        logger.info("Catalog loaded: %d videos", len(names))
        return True

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._names)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._names

    def on_directory_event(self, kind: DirectoryEvent, name: str):
        logger.info("Directory change: %s %s", kind.value, name)
        self.refresh()


class DirectoryEvent(Enum):
    CREATED = "created"
    DELETED = "deleted"
    MODIFIED = "modified"


class DirectoryWatcher:
    """
    Polls the catalog directory and reports create/delete/modify events.

    Events are only an invalidation signal: each one makes the catalog
    rescan itself, nothing is patched incrementally.
    """

    def __init__(self, catalog: VideoCatalog, interval: float = 1.0):
        self.catalog = catalog
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._previous: dict[str, tuple[int, int]] = {}

    def start(self):
        try:
            self._previous = self._snapshot()
        except OSError as e:
            logger.warning("Initial directory snapshot failed: %s", e)
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="directory-watcher", daemon=True
        )
        self._thread.start()
        logger.info("Watching %s for changes", self.catalog.directory)

    def stop(self):
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1)
        self._thread = None

    def _snapshot(self) -> dict[str, tuple[int, int]]:
        out = {}
        with os.scandir(self.catalog.directory) as entries:
            for e in entries:
                if e.is_file():
                    st = e.stat()
                    out[e.name] = (st.st_size, st.st_mtime_ns)
        return out

    def poll(self) -> list[tuple[DirectoryEvent, str]]:
        """Compare against the previous snapshot and dispatch the differences."""
        current = self._snapshot()
        events = []
        for name in current.keys() - self._previous.keys():
            events.append((DirectoryEvent.CREATED, name))
        for name in self._previous.keys() - current.keys():
            events.append((DirectoryEvent.DELETED, name))
        for name in current.keys() & self._previous.keys():
            if current[name] != self._previous[name]:
                events.append((DirectoryEvent.MODIFIED, name))
        self._previous = current
        for kind, name in events:
            self.catalog.on_directory_event(kind, name)
        return events

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.poll()
            except OSError as e:
                logger.warning("Directory watch error: %s", e)


# --- Per-client handler ---


class ConnectionHandler:
    """Serves one client connection until it closes or misbehaves."""

    def __init__(self, sock: socket.socket, client_id: int, catalog: VideoCatalog):
        self.sock = sock
        self.client_id = client_id
        self.catalog = catalog

    def run(self):
        reader = writer = None
        try:
            reader = self.sock.makefile("rb")
            writer = self.sock.makefile("wb")
            while True:
                line = reader.readline(MAX_LINE_LENGTH + 1)
                if not line:
                    logger.info("[client %d] Disconnected", self.client_id)
                    break
                self.process(Request.parse(line), writer)
                writer.flush()
        except ProtocolError as e:
            logger.warning("[client %d] Closing after bad command: %s", self.client_id, e)
        except OSError as e:
            logger.info("[client %d] Connection dropped: %s", self.client_id, e)
        finally:
            self._close(reader, writer)

    def process(self, request: Request, writer: BinaryIO):
        logger.debug("[client %d] Command: %s", self.client_id, request.encode().strip())
        if request.command is Command.LIST:
            writer.write(encode_list(self.catalog.snapshot()))
        elif request.command is Command.CHECK:
            writer.write(encode_stat(self._check(request.name)))
        elif request.command is Command.GET:
            self._send_video(request.name, writer)

    def _resolve(self, name: str) -> Optional[Path]:
        if not is_safe_name(name):
            logger.warning("[client %d] Rejected unsafe name %r", self.client_id, name)
            return None
        return self.catalog.directory / name

    def _check(self, name: str) -> FileStat:
        path = self._resolve(name)
        if path is None:
            return FileStat.missing()
        try:
            if not path.is_file():
                logger.info("[client %d] Not found: %s", self.client_id, name)
                return FileStat.missing()
            return FileStat.from_path(path)
        except OSError as e:
            logger.warning("[client %d] Could not stat %s: %s", self.client_id, name, e)
            return FileStat.missing()

    def _send_video(self, name: str, writer: BinaryIO):
        path = self._resolve(name)
        try:
            if path is None or not path.is_file():
                logger.info("[client %d] Not found: %s", self.client_id, name)
                writer.write(encode_size(ABSENT))
                return
            f = path.open("rb")
        except OSError as e:
            logger.warning("[client %d] Could not open %s: %s", self.client_id, name, e)
            writer.write(encode_size(ABSENT))
            return

        sent = 0
        with f:
            size = os.fstat(f.fileno()).st_size
            writer.write(encode_size(size))
            while sent < size:
                chunk = f.read(min(CHUNK_SIZE, size - sent))
                if not chunk:
                    break
                writer.write(chunk)
                sent += len(chunk)
        if sent < size:
            # Client will see a short read; nothing else can be sent on this stream.
            raise OSError(f"{name} shrank while sending ({sent} of {size} bytes)")
        logger.info("[client %d] Sent %s (%d bytes)", self.client_id, name, size)

    def _close(self, *streams):
        for stream in (*streams, self.sock):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as e:
                logger.debug("[client %d] Error while closing: %s", self.client_id, e)


# --- Listener ---


class VideoServer:
    """Accepts clients and hands each one to its own ConnectionHandler thread."""

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.catalog = VideoCatalog(self.config.video_dir, self.config.extension)
        self.watcher = DirectoryWatcher(self.catalog, self.config.watch_interval)
        self._running = threading.Event()
        self._client_ids = itertools.count(1)
        self._sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None

    @property
    def address(self) -> tuple[str, int]:
        if self._sock is None:
            raise RuntimeError("Server is not bound")
        return self._sock.getsockname()[:2]

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def _bind(self):
        self._sock = socket.create_server((self.config.host, self.config.port))
        self._sock.settimeout(ACCEPT_POLL_SECS)
        self._running.set()
        self.watcher.start()
        host, port = self.address
        logger.info("Serving %s on %s:%d", self.catalog.directory, host, port)

    def start(self) -> VideoServer:
        """Bind and run the accept loop on a background thread."""
        self._bind()
        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="accept-loop", daemon=True
        )
        self._accept_thread.start()
        return self

    def serve_forever(self):
        self._bind()
        try:
            self._accept_loop()
        finally:
            self.stop()

    def _accept_loop(self):
        sock = self._sock
        while self._running.is_set():
            try:
                conn, addr = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._running.is_set():
                    break
                logger.error("Error accepting connection: %s", e)
                continue
            client_id = next(self._client_ids)
            logger.info("[client %d] Connected from %s", client_id, addr[0])
            handler = ConnectionHandler(conn, client_id, self.catalog)
            threading.Thread(
                target=handler.run, name=f"client-{client_id}", daemon=True
            ).start()

    def stop(self):
        """Stop accepting; handlers already running finish on their next read."""
        if not self._running.is_set() and self._sock is None:
            return
        self._running.clear()
        self.watcher.stop()
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                logger.debug("Error closing listening socket: %s", e)
            self._sock = None
        if self._accept_thread and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=ACCEPT_POLL_SECS + 1)
        self._accept_thread = None
        logger.info("Server stopped")

    def __enter__(self) -> VideoServer:
        return self

    def __exit__(self, *exc):
        self.stop()
