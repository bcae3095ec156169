"""Mapping of request paths onto the on-disk cache tree."""

from __future__ import annotations

import posixpath
from pathlib import Path


def clean(request_path: str) -> str:
    """Return an absolute, traversal-free form of ``request_path``.

    The result always starts with exactly one ``/`` and contains no ``.``,
    ``..`` or empty segments, so joining it under a directory can never climb
    out of that directory.
    """

    rooted = "/" + request_path.lstrip("/")
    return posixpath.normpath(rooted)


def resolve_cache_path(root: Path, request_path: str) -> Path:
    relative = clean(request_path).lstrip("/")
    if not relative:
        return root
    return root.joinpath(*relative.split("/"))
