"""Helpers for checking HTTP responses."""

from __future__ import annotations

import http
import json
from typing import IO, Any

HTTP_STATUS_ERROR_BODY_MAX_LENGTH = 64 * 1024


def _status_text(code: int) -> str:
    try:
        return http.HTTPStatus(code).phrase
    except ValueError:
        return ""


class HTTPStatusError(Exception):
    """A non-2XX HTTP response."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(status_code, body)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.body and len(self.body) < HTTP_STATUS_ERROR_BODY_MAX_LENGTH:
            try:
                data = json.loads(self.body)
            except ValueError:
                data = ...
            if data is None:
                return ""
            if isinstance(data, dict):
                message = data.get("message")
                if message is None or isinstance(message, str):
                    return message or ""
        return (
            f"unexpected HTTP status {_status_text(self.status_code)}, "
            f"body={json.dumps(self.body)}"
        )


def read_at_most(stream: IO[bytes], max_bytes: int) -> bytes:
    """Read the whole stream, which must be shorter than ``max_bytes``."""
    data = stream.read(max_bytes)
    if len(data) >= max_bytes:
        raise ValueError(f"expected at most {max_bytes} bytes, got more")
    return data


def successful(response: Any) -> None:
    """Raise HTTPStatusError unless the response status is 2XX."""
    if response is None:
        raise ValueError("nil response")
    if response.status_code // 100 != 2:
        body = bytes(response.content or b"")[:HTTP_STATUS_ERROR_BODY_MAX_LENGTH]
        raise HTTPStatusError(response.status_code, body.decode("utf-8", errors="replace"))


def get(session: Any, url: str) -> Any:
    """GET ``url`` with ``session`` and check that the status is 2XX."""
    response = session.get(url)
    try:
        successful(response)
    except HTTPStatusError:
        response.close()
        raise
    return response