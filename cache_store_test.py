"""Tests for cache_store.py."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import threading

import pytest

from cache_store import PARTIAL_DIR_NAME, CacheStore
from errors import ServerError
from path_match import RequestKey


KEY = RequestKey(480, "shows/movie.mp4")


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "out")


class TestLocate:
    def test_canonical_layout(self, store: CacheStore):
        assert store.locate(KEY) == store.output_dir / "480" / "shows" / "movie.mp4"

    def test_no_io(self, store: CacheStore):
        store.locate(KEY)
        assert not store.output_dir.exists()


class TestLookup:
    """Tests for CacheStore.lookup."""

    def test_missing(self, store: CacheStore):
        assert store.lookup(KEY) is None

    def test_ready(self, store: CacheStore):
        path = store.locate(KEY)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"video")
        assert store.lookup(KEY) == path

    def test_file_in_place_of_directory_is_missing(self, store: CacheStore):
        (store.output_dir / "480").mkdir(parents=True)
        (store.output_dir / "480" / "shows").write_bytes(b"")
        assert store.lookup(KEY) is None

    def test_directory_at_canonical_path(self, store: CacheStore):
        store.locate(KEY).mkdir(parents=True)
        with pytest.raises(ServerError):
            store.lookup(KEY)

    def test_other_errors_surface(self, store: CacheStore):
        with patch.object(Path, "stat", side_effect=PermissionError("denied")):
            with pytest.raises(ServerError, match="denied"):
                store.lookup(KEY)


class TestReserve:
    """Tests for CacheStore.reserve."""

    def test_creates_dirs_and_temp(self, store: CacheStore):
        temp = store.reserve(KEY)
        assert temp.exists()
        assert temp.parent == store.output_dir / PARTIAL_DIR_NAME
        assert temp.suffix == ".mp4"
        assert store.locate(KEY).parent.is_dir()

    def test_temp_never_matches_lookup(self, store: CacheStore):
        temp = store.reserve(KEY)
        temp.write_bytes(b"partial")
        assert store.lookup(KEY) is None

    def test_unique_per_call(self, store: CacheStore):
        assert store.reserve(KEY) != store.reserve(KEY)

    def test_suffixless_filename(self, store: CacheStore):
        assert store.reserve(RequestKey(480, "movie")).suffix == ".mp4"

    def test_mkdir_failure(self, store: CacheStore):
        store.output_dir.parent.mkdir(parents=True, exist_ok=True)
        store.output_dir.write_bytes(b"not a directory")
        with pytest.raises(ServerError) as exc_info:
            store.reserve(KEY)
        assert exc_info.value.message == "Could not create output directory"
        assert exc_info.value.status_code == 500


class TestPublish:
    """Tests for CacheStore.publish and discard."""

    def test_publish_moves_temp(self, store: CacheStore):
        temp = store.reserve(KEY)
        temp.write_bytes(b"complete")
        path = store.publish(KEY, temp)
        assert path == store.locate(KEY)
        assert path.read_bytes() == b"complete"
        assert not temp.exists()
        assert store.lookup(KEY) == path

    def test_last_publish_wins(self, store: CacheStore):
        first = store.reserve(KEY)
        second = store.reserve(KEY)
        first.write_bytes(b"first")
        second.write_bytes(b"second")
        store.publish(KEY, first)
        store.publish(KEY, second)
        assert store.locate(KEY).read_bytes() == b"second"

    def test_discard_is_idempotent(self, store: CacheStore):
        temp = store.reserve(KEY)
        store.discard(temp)
        store.discard(temp)
        assert not temp.exists()

    def test_concurrent_lookups_see_missing_or_complete(self, store: CacheStore):
        """Readers racing a publish only ever see no file or the whole file."""
        payload = b"x" * 256 * 1024
        seen: set[int] = set()
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                path = store.lookup(KEY)
                if path is not None:
                    seen.add(len(path.read_bytes()))

        t = threading.Thread(target=reader)
        t.start()
        try:
            for _ in range(20):
                temp = store.reserve(KEY)
                temp.write_bytes(payload)
                store.publish(KEY, temp)
        finally:
            stop.set()
            t.join()
        assert seen <= {len(payload)}


class TestSweepPartials:
    def test_no_partial_dir(self, store: CacheStore):
        assert store.sweep_partials() == 0

    def test_removes_orphans_only(self, store: CacheStore):
        a = store.reserve(KEY)
        b = store.reserve(RequestKey(720, "other.mkv"))
        keep = store.partial_dir / "unrelated.txt"
        keep.write_text("keep")
        assert store.sweep_partials() == 2
        assert not a.exists()
        assert not b.exists()
        assert keep.exists()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
