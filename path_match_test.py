"""Tests for path_match.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from errors import InvalidWidth, RouteNotFound, UnsafePath
from path_match import RequestKey, match_path, normalize_filename, resolve_source


WIDTHS = frozenset({480, 720})


class TestMatchPath:
    """Tests for match_path."""

    def test_simple(self):
        assert match_path("/480p/movie.mp4", WIDTHS) == RequestKey(480, "movie.mp4")

    def test_nested_filename(self):
        key = match_path("/720p/shows/s01/e01.mp4", WIDTHS)
        assert key == RequestKey(720, "shows/s01/e01.mp4")

    def test_filename_is_normalized(self):
        key = match_path("/480p/shows/./s01/../s02/e01.mp4", WIDTHS)
        assert key.filename == "shows/s02/e01.mp4"

    def test_leading_zero_width(self):
        assert match_path("/0480p/movie.mp4", WIDTHS).width == 480

    @pytest.mark.parametrize(
        "path",
        [
            "/",
            "/movie.mp4",
            "/480/movie.mp4",
            "/480p/",
            "/480p",
            "/-480p/movie.mp4",
            "/abcp/movie.mp4",
            "480p/movie.mp4",
            "/4 80p/movie.mp4",
            "/٤٨٠p/movie.mp4",  # Arabic-Indic 480
            "/４８０p/movie.mp4",  # fullwidth 480
        ],
    )
    def test_no_match(self, path):
        with pytest.raises(RouteNotFound):
            match_path(path, WIDTHS)

    @pytest.mark.parametrize("width", [0, 1, 360, 479, 481, 1080, 10**30])
    @pytest.mark.parametrize("filename", ["movie.mp4", "../etc/passwd", "a/b.mkv"])
    def test_width_not_permitted(self, width, filename):
        with pytest.raises(InvalidWidth):
            match_path(f"/{width}p/{filename}", WIDTHS)

    def test_width_too_long_to_parse(self):
        with pytest.raises(InvalidWidth):
            match_path("/" + "1" * 5000 + "p/movie.mp4", WIDTHS)

    @pytest.mark.parametrize(
        "filename",
        [
            "../secret.mp4",
            "..",
            "a/../../secret.mp4",
            "a/b/../../../secret.mp4",
            "/etc/passwd",
            "//etc/passwd",
            ".",
            "./",
            "movie\x00.mp4",
        ],
    )
    def test_unsafe_filename(self, filename):
        with pytest.raises(UnsafePath):
            match_path(f"/480p/{filename}", WIDTHS)

    def test_dotdot_inside_name_is_fine(self):
        assert match_path("/480p/movie..final.mp4", WIDTHS).filename == "movie..final.mp4"

    def test_error_status_codes(self):
        assert RouteNotFound.status_code == 404
        assert InvalidWidth.status_code == 400
        assert UnsafePath.status_code == 400


class TestNormalizeFilename:
    """Tests for normalize_filename."""

    def test_collapses_slashes(self):
        assert normalize_filename("a//b.mp4") == "a/b.mp4"

    def test_trailing_dot_segment(self):
        assert normalize_filename("a/b/..") == "a"


class TestResolveSource:
    """Tests for resolve_source."""

    def test_joins_root(self, tmp_path: Path):
        assert resolve_source(tmp_path, RequestKey(480, "a/b.mp4")) == tmp_path / "a" / "b.mp4"

    def test_rejects_hand_built_traversal(self, tmp_path: Path):
        with pytest.raises(UnsafePath):
            resolve_source(tmp_path, RequestKey(480, "../x.mp4"))


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
