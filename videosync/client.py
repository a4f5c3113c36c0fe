# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Client connection handling and the list / check / download operations."""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from .cache import NOT_ACTUAL, FreshnessVerdict, LocalCache
from .protocol import (
    CHUNK_SIZE,
    DEFAULT_HOST,
    DEFAULT_PORT,
    CacheWriteError,
    ConnectionLostError,
    FileStat,
    ProtocolError,
    RefreshInProgressError,
    Request,
    RetryExhaustedError,
    TransferError,
    VideoNotFoundError,
    read_list,
    read_size,
    read_stat,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int], None]
ErrorCallback = Callable[[BaseException], None]


@dataclass
class ClientConfig:
    """Server address, cache location and timing for a VideoClient."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cache_dir: str = "temp"
    timeout_secs: float = 5.0
    retry_attempts: int = 3
    retry_delay_secs: float = 0.5
    max_workers: int = 16
    connect_on_start: bool = True

    @classmethod
    def from_env(cls) -> ClientConfig:
        return cls(
            host=os.getenv("VIDEOSYNC_HOST", DEFAULT_HOST),
            port=int(os.getenv("VIDEOSYNC_PORT", str(DEFAULT_PORT))),
            cache_dir=os.getenv("VIDEOSYNC_CACHE_DIR", "temp"),
            timeout_secs=float(os.getenv("VIDEOSYNC_TIMEOUT", "5.0")),
            retry_attempts=int(os.getenv("VIDEOSYNC_RETRY_ATTEMPTS", "3")),
        )


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _deliver(
    future: Future,
    on_success: Optional[Callable[[Any], None]],
    on_error: Optional[ErrorCallback],
) -> Future:
    """Route a future's outcome to the caller's callbacks."""

    def done(f: Future):
        if f.cancelled():
            if on_error:
                on_error(CancelledError())
            return
        exc = f.exception()
        if exc is not None:
            if on_error:
                on_error(exc)
        elif on_success:
            on_success(f.result())

    future.add_done_callback(done)
    return future


# --- Channel ---


class Channel:
    """Framed requests and replies over one connected socket."""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.reader = sock.makefile("rb")

    @property
    def open(self) -> bool:
        return self.sock.fileno() != -1

    def send(self, request: Request):
        self.sock.sendall(request.encode())

    def list_videos(self) -> list[str]:
        self.send(Request.for_list())
        return read_list(self.reader)

    def check(self, name: str) -> FileStat:
        self.send(Request.for_check(name))
        return read_stat(self.reader)

    def download(
        self, name: str, dest: Path, on_progress: Optional[ProgressCallback] = None
    ) -> int:
        """
        Fetch a file into dest, reporting percent done after every chunk.

        Raises VideoNotFoundError before touching dest if the server has no
        such file. On any later failure the partial dest file is removed.
        """
        self.send(Request.for_get(name))
        size = read_size(self.reader)
        if size < 0:
            raise VideoNotFoundError(name)

        try:
            out = dest.open("wb")
        except OSError as e:
            raise CacheWriteError(f"Could not create {dest}: {e}") from e
        received = 0
        try:
            with out:
                if size == 0 and on_progress:
                    on_progress(100)
                while received < size:
                    chunk = self.reader.read(min(CHUNK_SIZE, size - received))
                    if not chunk:
                        raise EOFError(f"Stream ended after {received} of {size} bytes")
                    try:
                        out.write(chunk)
                    except OSError as e:
                        raise CacheWriteError(f"Could not write {dest}: {e}") from e
                    received += len(chunk)
                    if on_progress:
                        on_progress(received * 100 // size)
        except Exception:
            dest.unlink(missing_ok=True)
            raise
        return size

    def abort(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Shutdown of aborted socket failed: %s", e)

    def close(self):
        for resource in (self.reader, self.sock):
            try:
                resource.close()
            except OSError as e:
                logger.warning("Error closing connection: %s", e)


# --- Connection Manager ---


class ConnectionManager:
    """
    Owns at most one live connection to the server.

    A single gate serializes connect, close and every exchange, so exactly
    one request/reply pair can be on the wire at a time.
    """

    def __init__(self, config: ClientConfig, executor: ThreadPoolExecutor):
        self.config = config
        self._executor = executor
        self._gate = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._channel: Optional[Channel] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        channel = self._channel
        return (
            self._state is ConnectionState.CONNECTED
            and channel is not None
            and channel.open
        )

    def connect(
        self,
        on_success: Optional[Callable[[], None]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Future:
        """Connect in the background; succeeds at once if already connected."""
        success = (lambda _: on_success()) if on_success else None
        if self.is_connected():
            future: Future = Future()
            future.set_result(None)
            return _deliver(future, success, on_error)
        return _deliver(self._executor.submit(self.ensure_connected), success, on_error)

    def ensure_connected(self):
        """Blocking connect used by worker steps. Raises ConnectionLostError."""
        with self._gate:
            if self.is_connected():
                return
            self._close_locked()
            self._state = ConnectionState.CONNECTING
            host, port = self.config.host, self.config.port
            try:
                sock = socket.create_connection(
                    (host, port), timeout=self.config.timeout_secs
                )
                self._channel = Channel(sock)
            except OSError as e:
                self._state = ConnectionState.DISCONNECTED
                logger.warning("Connection to %s:%d failed: %s", host, port, e)
                raise ConnectionLostError(f"Could not connect to {host}:{port}: {e}") from e
            self._state = ConnectionState.CONNECTED
            logger.info("Connected to %s:%d", host, port)

    def exchange(self, fn: Callable[[Channel], T]) -> T:
        """
        Run one request/reply exchange under the gate.

        Socket errors, short reads and malformed replies mean the stream can
        no longer be trusted: the connection is closed and the error is raised
        as ConnectionLostError, so the next call reconnects.
        """
        with self._gate:
            if not self.is_connected():
                raise ConnectionLostError("Not connected")
            try:
                return fn(self._channel)
            except VideoNotFoundError:
                raise
            except (OSError, EOFError, ProtocolError) as e:
                logger.warning("Connection lost: %s", e)
                self._close_locked()
                raise ConnectionLostError(str(e) or type(e).__name__) from e
            except Exception:
                self._close_locked()
                raise

    def close(self):
        with self._gate:
            self._close_locked()

    def abort(self):
        """Break an in-flight exchange without waiting for the gate."""
        channel = self._channel
        if channel is not None:
            channel.abort()

    def _close_locked(self):
        if self._channel is not None:
            self._channel.close()
            logger.info("Connection closed")
        self._channel = None
        self._state = ConnectionState.DISCONNECTED


# --- Request Orchestrator ---


class VideoClient:
    """
    Lists, freshness-checks and downloads videos from a catalog server.

    Every operation runs on the shared worker pool and returns a Future;
    callbacks, when given, receive the same outcome.

    Usage:
        client = VideoClient(ClientConfig(host="localhost", cache_dir="temp"))
        names = client.list_videos().result()
        path = client.download_video(names[0], on_progress=print).result()
        client.close()
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.config = config or ClientConfig()
        self.cache = LocalCache(self.config.cache_dir)
        self.cache.reset()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="videosync"
        )
        self.connection = ConnectionManager(self.config, self._executor)
        self._refresh_flag = threading.Lock()
        if self.config.connect_on_start:
            self.connection.connect(
                on_error=lambda e: logger.warning("Initial connection failed: %s", e)
            )

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    def _submit(self, step: Callable[..., T], *args, on_success=None, on_error=None) -> Future:
        return _deliver(self._executor.submit(step, *args), on_success, on_error)

    # Operations

    def list_videos(
        self,
        on_success: Optional[Callable[[list[str]], None]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Future:
        return self._submit(self._list_videos, on_success=on_success, on_error=on_error)

    def check_local_video(
        self,
        name: str,
        on_result: Optional[Callable[[FreshnessVerdict], None]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Future:
        return self._submit(
            self._check_local_video, name, on_success=on_result, on_error=on_error
        )

    def download_video(
        self,
        name: str,
        on_progress: Optional[ProgressCallback] = None,
        on_success: Optional[Callable[[Path], None]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Future:
        return self._submit(
            self._download_video, name, on_progress, on_success=on_success, on_error=on_error
        )

    def refresh_videos(
        self,
        on_success: Optional[Callable[[list[str]], None]] = None,
        on_error: Optional[ErrorCallback] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ) -> Future:
        """
        List videos, reconnecting and retrying up to retry_attempts times.

        Only one refresh sequence runs at a time; a call made while one is in
        flight fails immediately with RefreshInProgressError.
        """
        if not self._refresh_flag.acquire(blocking=False):
            future: Future = Future()
            future.set_exception(RefreshInProgressError("A refresh is already running"))
            return _deliver(future, on_success, on_error)
        try:
            future = self._executor.submit(self._list_with_retry, on_status)
        except RuntimeError:
            self._refresh_flag.release()
            raise
        future.add_done_callback(lambda _: self._refresh_flag.release())
        return _deliver(future, on_success, on_error)

    # Steps (run on worker threads)

    def _list_videos(self) -> list[str]:
        self.connection.ensure_connected()
        return self.connection.exchange(Channel.list_videos)

    def _check_local_video(self, name: str) -> FreshnessVerdict:
        local = self.cache.stat(name)
        if local is None:
            return NOT_ACTUAL
        if not self.connection.is_connected():
            logger.info("Offline, trusting cached copy of %s", name)
            return self.cache.trusted_verdict(name)
        try:
            remote = self.connection.exchange(lambda ch: ch.check(name))
        except TransferError as e:
            logger.warning("Check of %s failed, trusting cached copy: %s", name, e)
            return self.cache.trusted_verdict(name)
        if remote.absent:
            self.cache.remove(name)
            return NOT_ACTUAL
        return self.cache.verdict(name, local, remote)

    def _download_video(self, name: str, on_progress: Optional[ProgressCallback]) -> Path:
        verdict = self._check_local_video(name)
        if verdict.is_actual and verdict.local_path is not None:
            logger.info("Using cached copy of %s", name)
            return verdict.local_path
        dest = self.cache.path_for(name)
        self.connection.ensure_connected()
        size = self.connection.exchange(lambda ch: ch.download(name, dest, on_progress))
        logger.info("Downloaded %s (%d bytes)", name, size)
        return dest

    def _list_with_retry(self, on_status: Optional[Callable[[str], None]]) -> list[str]:
        attempts = self.config.retry_attempts
        last_error: Optional[TransferError] = None
        for attempt in range(1, attempts + 1):
            try:
                return self._list_videos()
            except TransferError as e:
                last_error = e
                logger.warning("List attempt %d/%d failed: %s", attempt, attempts, e)
                if attempt < attempts:
                    if on_status:
                        on_status(f"Attempt {attempt}/{attempts} failed, reconnecting...")
                    time.sleep(self.config.retry_delay_secs)
        raise RetryExhaustedError(attempts, last_error)

    # Lifecycle

    def abort(self):
        self.connection.abort()

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self.connection.abort()
        self.connection.close()

    shutdown = close

    def __enter__(self) -> VideoClient:
        return self

    def __exit__(self, *exc):
        self.close()
