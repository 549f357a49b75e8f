import os
from unittest import mock

import pytest
import requests

from macvz.downloader import Status, default_cache_dir, download, is_local

REMOTE_URL = "https://example.com/files/README.md"
BODY = b"# readme\nsome content\n"


class FakeResponse:
    def __init__(self, body, status_code=200, reason="OK"):
        self._body = body
        self.status_code = status_code
        self.reason = reason
        self.headers = {"Content-Length": str(len(body))}

    def iter_content(self, chunk_size=1):
        yield self._body

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def fake_get(body=BODY, status_code=200, reason="OK"):
    return mock.patch(
        "requests.get",
        side_effect=lambda *a, **k: FakeResponse(body, status_code, reason),
    )


def read(path):
    with open(path, "rb") as f:
        return f.read()


def test_remote_without_cache(tmp_path):
    local = str(tmp_path / "out" / "file")
    with fake_get() as get:
        r = download(local, REMOTE_URL)
        assert r.status == Status.DOWNLOADED
        assert read(local) == BODY
        r = download(local, REMOTE_URL)
        assert r.status == Status.SKIPPED
        assert get.call_count == 1


def test_remote_with_cache(tmp_path):
    cache = str(tmp_path / "cache")
    local = str(tmp_path / "file")
    with fake_get() as get:
        r = download(local, REMOTE_URL, cache)
        assert r.status == Status.DOWNLOADED
        r = download(local, REMOTE_URL, cache)
        assert r.status == Status.SKIPPED
        r = download(local + "-2", REMOTE_URL, cache)
        assert r.status == Status.USED_CACHE
        assert read(local + "-2") == BODY
        assert get.call_count == 1


def test_caching_only_mode(tmp_path):
    with pytest.raises(ValueError, match="cache directory to be specified"):
        download("", REMOTE_URL)
    cache = str(tmp_path / "cache")
    with fake_get() as get:
        r = download("", REMOTE_URL, cache)
        assert r.status == Status.DOWNLOADED
        assert read(r.cache_path) == BODY
        r = download("", REMOTE_URL, cache)
        assert r.status == Status.USED_CACHE
        local = str(tmp_path / "file")
        r = download(local, REMOTE_URL, cache)
        assert r.status == Status.USED_CACHE
        assert read(local) == BODY
        assert get.call_count == 1


def test_cache_records_url(tmp_path):
    cache = str(tmp_path / "cache")
    with fake_get():
        r = download("", REMOTE_URL, cache)
    assert r.cache_path.startswith(cache)
    assert os.path.basename(r.cache_path) == "data"
    with open(os.path.join(os.path.dirname(r.cache_path), "url")) as f:
        assert f.read() == REMOTE_URL


def test_http_error_status(tmp_path):
    with fake_get(b"missing", 404, "Not Found"):
        with pytest.raises(requests.HTTPError, match="expected HTTP status 200"):
            download(str(tmp_path / "file"), REMOTE_URL)
    assert not os.path.exists(tmp_path / "file")


def test_local_source_is_copied(tmp_path):
    src = tmp_path / "src"
    src.write_bytes(b"payload")
    dst = str(tmp_path / "dst")
    r = download(dst, str(src))
    assert r.status == Status.DOWNLOADED
    assert r.cache_path == ""
    assert read(dst) == b"payload"
    assert download(dst, str(src)).status == Status.SKIPPED


def test_local_file_url_source(tmp_path):
    src = tmp_path / "src"
    src.write_bytes(b"payload")
    dst = str(tmp_path / "dst")
    r = download(dst, "file://" + str(src))
    assert r.status == Status.DOWNLOADED
    assert read(dst) == b"payload"


def test_relative_file_url_rejected(tmp_path):
    with pytest.raises(ValueError, match="non-absolute"):
        download("file://relative/path", str(tmp_path / "src"))


def test_non_local_destination_rejected():
    with pytest.raises(ValueError, match="non-local"):
        download("https://example.com/dst", REMOTE_URL)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("/tmp/foo", True),
        ("relative/foo", True),
        ("file:///tmp/foo", True),
        ("https://example.com/foo", False),
        ("http://example.com/foo", False),
    ],
)
def test_is_local(value, expected):
    assert is_local(value) is expected


def test_default_cache_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg"))
    result = default_cache_dir()
    assert os.path.basename(result) == "lima"
    assert result.startswith(str(tmp_path))