"""Fetching of remote or local resources, with an optional download cache."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests
from tqdm import tqdm

from macvz.localpathutil import expand

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class Status(str, Enum):
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    USED_CACHE = "used-cache"


@dataclass(frozen=True)
class Result:
    status: Status
    # e.g. "~/Library/Caches/lima/download/by-url-sha256/<SHA256_OF_URL>/data"
    cache_path: str = ""
    validated_digest: bool = False


def default_cache_dir() -> str:
    """Return the per-user cache directory used for downloads."""
    home = os.environ.get("HOME", "")
    if sys.platform == "darwin":
        if not home:
            raise OSError("$HOME is not defined")
        base = os.path.join(home, "Library", "Caches")
    else:
        base = os.environ.get("XDG_CACHE_HOME", "")
        if not base:
            if not home:
                raise OSError("neither $XDG_CACHE_HOME nor $HOME are defined")
            base = os.path.join(home, ".cache")
    return os.path.join(base, "lima")


def is_local(s: str) -> bool:
    """True for plain paths and ``file://`` URLs."""
    return "://" not in s or s.startswith("file://")


def _canonical_local_path(s: str) -> str:
    if not s:
        raise ValueError("got empty path")
    if not is_local(s):
        raise ValueError(f"got non-local path: {s!r}")
    if s.startswith("file://"):
        path = s[len("file://"):]
        if not os.path.isabs(path):
            raise ValueError(f"got non-absolute path {path!r}")
        return path
    return expand(s)


def _copy_local(dst: str, src: str) -> None:
    src_path = _canonical_local_path(src)
    if not dst:
        # An empty destination means caching-only mode.
        return
    shutil.copyfile(src_path, _canonical_local_path(dst))


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _content_length(response) -> Optional[int]:
    value = str(response.headers.get("Content-Length", ""))
    return int(value) if value.isdigit() else None


def _download_http(local_path: str, url: str) -> None:
    if not local_path:
        raise ValueError("download_http: got empty local path")
    logger.debug("downloading %r into %r", url, local_path)
    tmp_path = local_path + ".tmp"
    _remove_all(tmp_path)
    interactive = sys.stdout.isatty()
    with open(tmp_path, "wb") as out, requests.get(url, stream=True) as response:
        if response.status_code != 200:
            raise requests.HTTPError(
                f"expected HTTP status 200, got {response.status_code} {response.reason}",
                response=response,
            )
        with tqdm(
            total=_content_length(response),
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            ncols=80,
            mininterval=0.2 if interactive else 5.0,
            colour="green" if interactive else None,
            file=sys.stderr,
        ) as bar:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                out.write(chunk)
                bar.update(len(chunk))
        out.flush()
        os.fsync(out.fileno())
    _remove_all(local_path)
    os.rename(tmp_path, local_path)


def download(local: str, remote: str, cache_dir: Optional[str] = None) -> Result:
    """Download ``remote`` into ``local``.

    An existing ``local`` is left alone and reported as skipped. With a
    ``cache_dir`` remote resources are cached there; local sources never are.
    An empty ``local`` selects caching-only mode, which needs ``cache_dir``.
    """
    local_path = ""
    if not local:
        if not cache_dir:
            raise ValueError(
                "caching-only mode requires the cache directory to be specified"
            )
    else:
        local_path = _canonical_local_path(local)
        if os.path.exists(local_path):
            logger.debug(
                "file %r already exists, skipping downloading from %r "
                "(and skipping digest validation)",
                local_path,
                remote,
            )
            return Result(status=Status.SKIPPED)
        os.makedirs(os.path.dirname(local_path), mode=0o755, exist_ok=True)

    if is_local(remote):
        _copy_local(local_path, remote)
        return Result(status=Status.DOWNLOADED)

    if not cache_dir:
        _download_http(local_path, remote)
        return Result(status=Status.DOWNLOADED)

    digest = hashlib.sha256(remote.encode("utf-8")).hexdigest()
    shad = os.path.join(cache_dir, "download", "by-url-sha256", digest)
    shad_data = os.path.join(shad, "data")
    if os.path.exists(shad_data):
        logger.debug("file %r is cached as %r", local_path, shad_data)
        _copy_local(local_path, shad_data)
        return Result(status=Status.USED_CACHE, cache_path=shad_data)

    _remove_all(shad)
    os.makedirs(shad, mode=0o700)
    with open(os.path.join(shad, "url"), "w", encoding="utf-8") as url_file:
        url_file.write(remote)
    _download_http(shad_data, remote)
    _copy_local(local_path, shad_data)
    return Result(status=Status.DOWNLOADED, cache_path=shad_data)