# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Local cache of downloaded videos.

The cache directory is flat: every entry is named exactly like its catalog
name, and a later download of the same name overwrites the earlier one.
Freshness is decided from size and modification time alone.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .protocol import FileStat, is_safe_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshnessVerdict:
    """Whether a cached copy may be used without downloading."""

    is_actual: bool
    local_path: Optional[Path] = None


NOT_ACTUAL = FreshnessVerdict(False, None)


def is_fresh(local: FileStat, remote: FileStat) -> bool:
    """Same size and a local mtime no older than the server's."""
    if remote.absent:
        return False
    return local.size == remote.size and local.mtime_ms >= remote.mtime_ms


class LocalCache:
    """Scratch storage for downloaded videos."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def reset(self):
        """Wipe the cache directory and recreate it empty."""
        if self.directory.exists():
            shutil.rmtree(self.directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.info("Cache directory reset: %s", self.directory)

    def path_for(self, name: str) -> Path:
        if not is_safe_name(name):
            raise ValueError(f"Unsafe video name: {name!r}")
        return self.directory / name

    def stat(self, name: str) -> Optional[FileStat]:
        """Metadata of the cached copy, or None if there is none."""
        path = self.path_for(name)
        try:
            if not path.is_file():
                return None
            return FileStat.from_path(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not stat cached %s: %s", name, e)
            return None

    def remove(self, name: str) -> bool:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not remove cached %s: %s", name, e)
            return False
        logger.info("Removed stale cache entry %s", name)
        return True

    def trusted_verdict(self, name: str) -> FreshnessVerdict:
        """Trust whatever copy exists; used when the server cannot be asked."""
        path = self.path_for(name)
        if path.is_file():
            return FreshnessVerdict(True, path)
        return NOT_ACTUAL

    def verdict(self, name: str, local: FileStat, remote: FileStat) -> FreshnessVerdict:
        if is_fresh(local, remote):
            return FreshnessVerdict(True, self.path_for(name))
        return NOT_ACTUAL

    def cleanup_older_than(self, max_age_secs: float) -> int:
        """
        Delete cached files last modified more than max_age_secs ago.

        Returns the number of deleted files. Files that cannot be removed are
        logged and skipped.
        """
        if not self.directory.exists():
            return 0
        cutoff_ns = time.time_ns() - int(max_age_secs * 1_000_000_000)
        deleted = 0
        for path in self.directory.iterdir():
            try:
                if not path.is_file() or path.stat().st_mtime_ns >= cutoff_ns:
                    continue
                path.unlink()
                deleted += 1
            except OSError as e:
                logger.warning("Could not remove old cache file %s: %s", path, e)
        if deleted:
            logger.info("Removed %d cache files older than %ss", deleted, max_age_secs)
        return deleted
