import fcntl
import os

import pytest

from macvz.lockutil import dir_lock, flock, with_dir_lock


def _try_lock(path):
    fd = os.open(path, os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
        return True
    except BlockingIOError:
        return False
    finally:
        os.close(fd)


def test_with_dir_lock_returns_result_and_holds_lock(tmp_path):
    observed = with_dir_lock(str(tmp_path), lambda: _try_lock(str(tmp_path)))
    assert observed is False
    assert _try_lock(str(tmp_path)) is True


def test_dir_lock_released_after_exception(tmp_path):
    with pytest.raises(RuntimeError):
        with dir_lock(str(tmp_path)):
            raise RuntimeError("inside")
    assert _try_lock(str(tmp_path)) is True


def test_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        with_dir_lock(str(tmp_path / "absent"), lambda: None)


def test_flock_accepts_file_objects(tmp_path):
    path = tmp_path / "f"
    path.write_text("")
    with open(path) as holder:
        flock(holder, fcntl.LOCK_EX)
        assert _try_lock(str(path)) is False
        flock(holder.fileno(), fcntl.LOCK_UN)
        assert _try_lock(str(path)) is True