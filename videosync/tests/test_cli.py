#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command line client against a live server.

Usage: pytest videosync/tests/test_cli.py
"""

from ..cli import main
from .conftest import unused_port, video_bytes, write_video


def client_args(address, tmp_path):
    host, port = address
    return ["--host", host, "--port", str(port), "--cache-dir", str(tmp_path / "cli-cache")]


def test_list(server, video_dir, tmp_path, capsys):
    write_video(video_dir, "a.mp4", 1)
    write_video(video_dir, "b.mp4", 1)
    server.catalog.refresh()

    assert main(["list", *client_args(server.address, tmp_path)]) == 0
    assert capsys.readouterr().out.splitlines() == ["a.mp4", "b.mp4"]


def test_get(server, video_dir, tmp_path, capsys):
    write_video(video_dir, "movie.mp4", 20_000)

    assert main(["get", "movie.mp4", *client_args(server.address, tmp_path)]) == 0
    assert "Saved to" in capsys.readouterr().out
    assert (tmp_path / "cli-cache" / "movie.mp4").read_bytes() == video_bytes(20_000)


def test_get_missing_video_fails(server, tmp_path, capsys):
    assert main(["get", "nope.mp4", *client_args(server.address, tmp_path)]) == 1
    assert "Video not found: nope.mp4" in capsys.readouterr().err


def test_list_without_server_fails(tmp_path, capsys, monkeypatch):
    monkeypatch.setenv("VIDEOSYNC_RETRY_ATTEMPTS", "2")
    address = ("127.0.0.1", unused_port())

    assert main(["list", *client_args(address, tmp_path)]) == 1
    captured = capsys.readouterr()
    assert "Attempt 1/2 failed, reconnecting..." in captured.out
    assert "Gave up after 2 attempts" in captured.err
