"""Request path parsing: /{width}p/{filename} -> RequestKey."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass

import pathlib
import posixpath
import re

from errors import InvalidWidth, RouteNotFound, UnsafePath


_PATH_RE = re.compile(r"^/([0-9]+)p/(.+)$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class RequestKey:
    """Identifies a cache entry: target width and normalized relative filename."""

    width: int
    filename: str


def normalize_filename(filename: str) -> str:
    """Normalize a relative filename, rejecting anything that leaves the root."""
    if "\x00" in filename:
        raise UnsafePath(f"NUL byte in filename {filename!r}")
    cleaned = posixpath.normpath(filename)
    if posixpath.isabs(cleaned):
        raise UnsafePath(f"Absolute filename {filename!r}")
    if cleaned in (".", "..") or cleaned.startswith("../"):
        raise UnsafePath(f"Filename escapes input root: {filename!r}")
    return cleaned


def match_path(path: str, widths: Collection[int]) -> RequestKey:
    """Parse a request path into a RequestKey.

    Raises RouteNotFound when the path does not look like /<width>p/<file>,
    InvalidWidth when the width is not permitted, and UnsafePath when the
    filename is absolute or traverses out of the input root.
    """
    m = _PATH_RE.match(path)
    if not m:
        raise RouteNotFound(f"No route for {path!r}")
    try:
        width = int(m.group(1))
    except ValueError as e:
        # int() refuses digit strings past sys.get_int_max_str_digits()
        raise InvalidWidth(f"Width of {len(m.group(1))} digits does not parse") from e
    if width not in widths:
        raise InvalidWidth(f"Width {width} not in {sorted(widths)}")
    return RequestKey(width=width, filename=normalize_filename(m.group(2)))


def resolve_source(input_dir: pathlib.Path, key: RequestKey) -> pathlib.Path:
    """Join a key's filename onto the input root, re-checking containment."""
    source = input_dir / normalize_filename(key.filename)
    if not source.is_relative_to(input_dir):
        raise UnsafePath(f"Filename escapes input root: {key.filename!r}")
    return source
