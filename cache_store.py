"""On-disk cache of transcoded artifacts with atomic publication."""

from __future__ import annotations

import logging
import os
import pathlib
import stat
import tempfile

from errors import ServerError
from path_match import RequestKey


log = logging.getLogger(__name__)

# Lives beside the <width>/ directories, so lookup() can never match a partial
PARTIAL_DIR_NAME = ".partial"
_PARTIAL_PREFIX = "vodscale_"


class CacheStore:
    """Published artifacts live at output_dir/<width>/<filename>.

    New artifacts are written under output_dir/.partial/ (same filesystem) and
    moved into place with os.replace(), so a canonical path only ever holds a
    complete file.
    """

    def __init__(self, output_dir: pathlib.Path) -> None:
        self.output_dir = pathlib.Path(output_dir)
        self.partial_dir = self.output_dir / PARTIAL_DIR_NAME

    def locate(self, key: RequestKey) -> pathlib.Path:
        return self.output_dir / str(key.width) / key.filename

    def lookup(self, key: RequestKey) -> pathlib.Path | None:
        """Return the canonical path if the artifact is Ready, None if Missing."""
        path = self.locate(key)
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            log.error("Cache lookup failed for %s: %s", path, e)
            raise ServerError(f"stat {path}: {e}") from e
        if not stat.S_ISREG(st.st_mode):
            log.error("Cache path %s exists but is not a regular file", path)
            raise ServerError(f"{path} is not a regular file")
        return path

    def reserve(self, key: RequestKey) -> pathlib.Path:
        """Create output directories and a unique temp artifact for key."""
        canonical = self.locate(key)
        try:
            canonical.parent.mkdir(parents=True, exist_ok=True)
            self.partial_dir.mkdir(parents=True, exist_ok=True)
            # Keep the suffix so the encoder can pick a muxer from the name
            fd, temp = tempfile.mkstemp(
                prefix=f"{_PARTIAL_PREFIX}{key.width}_",
                suffix=pathlib.PurePosixPath(key.filename).suffix or ".mp4",
                dir=self.partial_dir,
            )
            os.close(fd)
        except OSError as e:
            log.error("Could not create output directory for %s: %s", canonical, e)
            raise ServerError(
                f"prepare {canonical}: {e}", message="Could not create output directory"
            ) from e
        return pathlib.Path(temp)

    def publish(self, key: RequestKey, temp: pathlib.Path) -> pathlib.Path:
        """Atomically move a finished temp artifact onto the canonical path."""
        canonical = self.locate(key)
        canonical.parent.mkdir(parents=True, exist_ok=True)
        os.replace(temp, canonical)
        log.info("Published %s", canonical)
        return canonical

    def discard(self, temp: pathlib.Path) -> None:
        """Remove a partial artifact. Safe to call more than once."""
        try:
            temp.unlink(missing_ok=True)
        except OSError as e:
            log.warning("Failed to remove partial artifact %s: %s", temp, e)

    def sweep_partials(self) -> int:
        """Remove partial artifacts left behind by a previous run."""
        if not self.partial_dir.is_dir():
            return 0
        removed = 0
        for f in self.partial_dir.glob(f"{_PARTIAL_PREFIX}*"):
            try:
                f.unlink()
                removed += 1
            except OSError as e:
                log.warning("Failed to remove orphaned partial %s: %s", f, e)
        if removed:
            log.info("Startup cleanup: removed %d orphaned partial artifacts", removed)
        return removed
