"""Test utilities."""

from __future__ import annotations

from collections.abc import Callable

import sys
import textwrap


# Stand-in for ffmpeg: copies the input to the output file and to stdout.
#   ok     - full copy to both sinks, exit 0
#   fail   - half the file, one stdout chunk, stderr message, exit 1
#   hang   - half the file, one stdout chunk, then sleeps until killed
#   linger - full copy to both sinks, closes stdout, then sleeps until killed
FAKE_ENCODER = textwrap.dedent(
    """
    import os, sys, time
    src, dst, mode = sys.argv[1], sys.argv[2], sys.argv[3]
    with open(src, "rb") as f:
        data = f.read()
    with open(dst, "wb") as f:
        f.write(data if mode in ("ok", "linger") else data[: len(data) // 2])
    out = sys.stdout.buffer
    if mode in ("ok", "linger"):
        for i in range(0, len(data), 4096):
            out.write(data[i : i + 4096])
            out.flush()
        if mode == "ok":
            sys.exit(0)
        os.close(1)
        time.sleep(60)
    out.write(data[:4096])
    out.flush()
    if mode == "fail":
        sys.stderr.write("Error: fake encoder failure\\n")
        sys.exit(1)
    time.sleep(60)
    """
)


def fake_encoder_cmd(mode: str = "ok") -> Callable[..., list[str]]:
    """Command builder that runs FAKE_ENCODER instead of ffmpeg."""

    def build(input_path: str, width: int, output_path: str, settings: object) -> list[str]:
        return [sys.executable, "-c", FAKE_ENCODER, input_path, output_path, mode]

    return build


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )
