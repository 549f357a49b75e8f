"""Relaying of JSON log lines written by another process."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from macvz.api import _parse_time

_log = logging.getLogger(__name__)

TRACE = 5

EPSILON = timedelta(seconds=1)

_LEVELS = {
    "panic": logging.CRITICAL + 10,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}


@dataclass
class JSONLine:
    """One line as written by a JSON log formatter."""

    level: str = ""
    msg: str = ""
    time: Optional[datetime] = None

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "JSONLine":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("log line is not a JSON object")
        level = data.get("level") or ""
        msg = data.get("msg") or ""
        raw_time = data.get("time")
        if not isinstance(level, str) or not isinstance(msg, str):
            raise ValueError("log line has non-string fields")
        if raw_time is not None and not isinstance(raw_time, str):
            raise ValueError("log line has a non-string time")
        return cls(level=level, msg=msg, time=_parse_time(raw_time))


def propagate_json(
    logger: logging.Logger,
    json_line: Union[str, bytes],
    header: str,
    begin: Optional[datetime],
) -> None:
    """Re-emit a JSON log line on ``logger``.

    Panic and fatal lines are emitted as errors. Lines older than ``begin``
    are dropped; lines that cannot be parsed are logged verbatim at info level.
    """
    text = json_line.decode("utf-8", errors="replace") if isinstance(json_line, bytes) else json_line
    if not text.strip():
        return
    try:
        line = JSONLine.from_json(text)
    except ValueError:
        _log.info("%s", header + text)
        return
    if line.time is not None and begin is not None and begin > line.time + EPSILON:
        return
    level = _LEVELS.get(line.level.lower())
    if level is None:
        _log.info("%s", header + text)
        return
    message = header + line.msg
    if level >= logging.CRITICAL:
        logger.error("%s", message, extra={"logrus_level": line.level.lower()})
    else:
        logger.log(level, "%s", message)