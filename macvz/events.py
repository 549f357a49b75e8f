"""Host agent status events and a follower for the host agent's output."""

from __future__ import annotations

import json
import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from macvz.api import _format_time, _parse_time
from macvz.logjson import propagate_json

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


@dataclass
class Status:
    running: bool = False
    # When degraded is true, running must be true as well.
    degraded: bool = False
    # When exiting is true, running must be false.
    exiting: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.running:
            data["running"] = True
        if self.degraded:
            data["degraded"] = True
        if self.exiting:
            data["exiting"] = True
        if self.errors:
            data["errors"] = list(self.errors)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Status":
        return cls(
            running=bool(data.get("running")),
            degraded=bool(data.get("degraded")),
            exiting=bool(data.get("exiting")),
            errors=list(data.get("errors") or []),
        )


@dataclass
class Event:
    time: Optional[datetime] = None
    status: Status = field(default_factory=Status)

    def to_json(self) -> str:
        payload = {"time": _format_time(self.time), "status": self.status.to_dict()}
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "Event":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("event is not a JSON object")
        return cls(
            time=_parse_time(data.get("time")),
            status=Status.from_dict(data.get("status") or {}),
        )


class _Follower:
    """Yields complete lines of a file as they are appended."""

    def __init__(self, path: str) -> None:
        self._file = open(path, encoding="utf-8", errors="replace")
        self._pending = ""

    def lines(self) -> Iterator[str]:
        while True:
            chunk = self._file.readline()
            if not chunk:
                return
            self._pending += chunk
            if not self._pending.endswith("\n"):
                return
            line, self._pending = self._pending[:-1], ""
            yield line

    def close(self) -> None:
        self._file.close()


def watch(
    stdout_path: str,
    stderr_path: str,
    begin: Optional[datetime],
    on_event: Callable[[Event], bool],
    cancel: Optional[threading.Event] = None,
) -> None:
    """Follow the host agent's stdout events and stderr logs.

    Returns when ``on_event`` returns true or ``cancel`` is set. Both files
    must exist.
    """
    cancel = cancel or threading.Event()
    with ExitStack() as stack:
        out = _Follower(stdout_path)
        stack.callback(out.close)
        err = _Follower(stderr_path)
        stack.callback(err.close)
        while not cancel.is_set():
            progressed = False
            for text in out.lines():
                progressed = True
                if not text:
                    continue
                event = Event.from_json(text)
                logger.debug("received an event: %s", event)
                if on_event(event):
                    return
            for text in err.lines():
                progressed = True
                propagate_json(logging.getLogger("macvz"), text, "[hostagent] ", begin)
            if not progressed:
                cancel.wait(_POLL_INTERVAL)