"""Expansion of user-supplied local paths."""

from __future__ import annotations

import os


def expand(orig: str) -> str:
    """Expand "~", "~/" and "~/foo" and return an absolute, cleaned path.

    Paths such as "~foo/bar" are not supported.
    """
    if not orig:
        raise ValueError("empty path")
    home = os.environ.get("HOME")
    if not home:
        raise OSError("$HOME is not defined")

    path = orig
    if path.startswith("~"):
        if path == "~" or path.startswith("~/"):
            path = path.replace("~", home, 1)
        else:
            raise ValueError(f"unexpandable path {orig!r}")
    return os.path.abspath(path)