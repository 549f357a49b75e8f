"""Advisory locking of directories."""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from typing import IO, Callable, Iterator, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


def flock(f: Union[int, IO], flags: int) -> None:
    """Apply ``fcntl.flock`` to a file or descriptor, retrying on EINTR."""
    fd = f if isinstance(f, int) else f.fileno()
    while True:
        try:
            fcntl.flock(fd, flags)
            return
        except InterruptedError:
            continue


@contextmanager
def dir_lock(directory: str) -> Iterator[None]:
    """Hold an exclusive lock on ``directory`` for the duration of the block."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        try:
            flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to lock {directory!r}: {exc.strerror}") from exc
        try:
            yield
        finally:
            try:
                flock(fd, fcntl.LOCK_UN)
            except OSError:
                logger.exception("failed to unlock %r", directory)
    finally:
        os.close(fd)


def with_dir_lock(directory: str, fn: Callable[[], T]) -> T:
    """Call ``fn`` while holding the lock on ``directory``; return its result."""
    with dir_lock(directory):
        return fn()