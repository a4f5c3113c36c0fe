#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Playback progress store.

Usage: pytest videosync/tests/test_progress.py
"""

from concurrent.futures import ThreadPoolExecutor

from .. import ProgressStore


def test_unknown_video_starts_at_zero(tmp_path):
    store = ProgressStore(tmp_path / "progress.db")
    assert store.get_progress("never.mp4") == 0


def test_save_overwrites_and_persists(tmp_path):
    db = tmp_path / "state" / "progress.db"
    store = ProgressStore(db)
    store.save_progress("movie.mp4", 1_000)
    store.save_progress("movie.mp4", 61_500)

    assert ProgressStore(db).get_progress("movie.mp4") == 61_500


def test_forget(tmp_path):
    store = ProgressStore(tmp_path / "progress.db")
    store.save_progress("movie.mp4", 10)
    store.forget("movie.mp4")
    assert store.get_progress("movie.mp4") == 0


def test_saves_from_several_threads(tmp_path):
    store = ProgressStore(tmp_path / "progress.db")
    names = [f"video{i}.mp4" for i in range(20)]
    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda n: store.save_progress(n, len(n) * 100), names))
    assert all(store.get_progress(n) == len(n) * 100 for n in names)
