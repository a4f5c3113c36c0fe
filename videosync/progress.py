# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Last-played offsets per video, kept in a small SQLite database."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path

DEFAULT_DB_PATH = "video_progress.db"


class ProgressStore:
    """
    Key-value store mapping a video name to its last-played offset (ms).

    Every call opens its own connection, so the store can be used from the
    player's event thread and from worker threads alike.

    Usage:
        store = ProgressStore("video_progress.db")
        store.save_progress("movie.mp4", 61_500)
        store.get_progress("movie.mp4")  # 61500
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as db:
            db.executescript("""
                CREATE TABLE IF NOT EXISTS video_progress (
                    video_name TEXT PRIMARY KEY,
                    progress INTEGER NOT NULL
                );
            """)
            db.commit()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=5.0)

    def get_progress(self, name: str) -> int:
        """Return the saved offset, 0 if the video was never played."""
        with closing(self._connect()) as db:
            row = db.execute(
                "SELECT progress FROM video_progress WHERE video_name = ?", (name,)
            ).fetchone()
        return row[0] if row else 0

    def save_progress(self, name: str, offset_ms: int):
        with closing(self._connect()) as db:
            db.execute(
                "INSERT OR REPLACE INTO video_progress (video_name, progress) VALUES (?, ?)",
                (name, int(offset_ms)),
            )
            db.commit()

    def forget(self, name: str):
        with closing(self._connect()) as db:
            db.execute("DELETE FROM video_progress WHERE video_name = ?", (name,))
            db.commit()
