# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command line entry point.

    videosync serve --video-dir videos --port 8080
    videosync list
    videosync get movie.mp4
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .client import ClientConfig, VideoClient
from .protocol import TransferError
from .server import ServerConfig, VideoServer


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="videosync", description=__doc__.split("\n")[1])
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="serve a directory of videos")
    serve.add_argument("--host", help="bind address (default: all interfaces)")
    serve.add_argument("--port", type=int)
    serve.add_argument("--video-dir")
    serve.add_argument("--watch-interval", type=float)

    for name, help_text in (
        ("list", "list videos on the server"),
        ("get", "download a video into the cache"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--host")
        p.add_argument("--port", type=int)
        p.add_argument("--cache-dir")
        if name == "get":
            p.add_argument("name")
    return parser


def _override(config, args: argparse.Namespace, *fields: str):
    for field in fields:
        value = getattr(args, field, None)
        if value is not None:
            setattr(config, field, value)
    return config


def _serve(args: argparse.Namespace) -> int:
    config = _override(
        ServerConfig.from_env(), args, "host", "port", "video_dir", "watch_interval"
    )
    try:
        VideoServer(config).serve_forever()
    except KeyboardInterrupt:
        pass
    return 0


def _run_client(args: argparse.Namespace) -> int:
    config = _override(ClientConfig.from_env(), args, "host", "port", "cache_dir")
    config.connect_on_start = False
    with VideoClient(config) as client:
        try:
            if args.command == "list":
                for name in client.refresh_videos(on_status=print).result():
                    print(name)
            else:
                path = client.download_video(
                    args.name, on_progress=lambda p: print(f"\r{p:3d}%", end="")
                ).result()
                print(f"\nSaved to {path}")
        except (TransferError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "serve":
        return _serve(args)
    return _run_client(args)


if __name__ == "__main__":
    sys.exit(main())
