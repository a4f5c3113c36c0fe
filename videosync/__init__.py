# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
videosync - browse, freshness-check and download videos from a catalog server.

One persistent TCP connection per client carries strictly alternating
LIST / CHECK / GET exchanges; downloads land in a local cache directory.

Usage:
    from videosync import ClientConfig, VideoClient, VideoServer, ServerConfig

    server = VideoServer(ServerConfig(video_dir="videos")).start()
    client = VideoClient(ClientConfig(cache_dir="temp"))
    names = client.refresh_videos(on_status=print).result()
    path = client.download_video(names[0], on_progress=print).result()
    client.close()
    server.stop()
"""

from .cache import NOT_ACTUAL, FreshnessVerdict, LocalCache, is_fresh
from .client import (
    Channel,
    ClientConfig,
    ConnectionManager,
    ConnectionState,
    VideoClient,
)
from .progress import ProgressStore
from .protocol import (
    ABSENT,
    CHUNK_SIZE,
    DEFAULT_HOST,
    DEFAULT_PORT,
    VIDEO_EXTENSION,
    CacheWriteError,
    Command,
    ConnectionLostError,
    FileStat,
    ProtocolError,
    RefreshInProgressError,
    Request,
    RetryExhaustedError,
    TransferError,
    VideoNotFoundError,
    is_safe_name,
)
from .server import (
    ConnectionHandler,
    DirectoryEvent,
    DirectoryWatcher,
    ServerConfig,
    VideoCatalog,
    VideoServer,
)

__all__ = [
    # Wire protocol
    "ABSENT",
    "CHUNK_SIZE",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "VIDEO_EXTENSION",
    "Command",
    "Request",
    "FileStat",
    "is_safe_name",
    # Exceptions
    "TransferError",
    "ProtocolError",
    "ConnectionLostError",
    "VideoNotFoundError",
    "RetryExhaustedError",
    "RefreshInProgressError",
    "CacheWriteError",
    # Cache
    "FreshnessVerdict",
    "NOT_ACTUAL",
    "LocalCache",
    "is_fresh",
    "ProgressStore",
    # Server
    "ServerConfig",
    "VideoCatalog",
    "DirectoryEvent",
    "DirectoryWatcher",
    "ConnectionHandler",
    "VideoServer",
    # Client
    "ClientConfig",
    "ConnectionState",
    "Channel",
    "ConnectionManager",
    "VideoClient",
]

__version__ = "1.0.0"
