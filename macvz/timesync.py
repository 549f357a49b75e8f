"""Reading the hardware clock and setting the system clock."""

from __future__ import annotations

import fcntl
import os
import struct
import time
from datetime import datetime, timezone

RTC_PATH = "/dev/rtc"

# struct rtc_time: nine ints, tm_sec first.
_RTC_TIME = struct.Struct("9i")
# _IOR('p', 0x09, struct rtc_time)
RTC_RD_TIME = (2 << 30) | (_RTC_TIME.size << 16) | (ord("p") << 8) | 0x09


def decode_rtc_time(raw: bytes) -> datetime:
    """Convert a ``struct rtc_time`` into a UTC datetime."""
    if len(raw) < _RTC_TIME.size:
        raise ValueError(
            f"rtc_time needs {_RTC_TIME.size} bytes, got {len(raw)}"
        )
    sec, minute, hour, mday, mon, year, *_ = _RTC_TIME.unpack_from(raw)
    return datetime(year + 1900, mon + 1, mday, hour, minute, sec, tzinfo=timezone.utc)


def get_rtc_time() -> datetime:
    """Read the time of the real-time clock."""
    fd = os.open(RTC_PATH, os.O_RDONLY)
    try:
        raw = fcntl.ioctl(fd, RTC_RD_TIME, bytes(_RTC_TIME.size))
    finally:
        os.close(fd)
    return decode_rtc_time(raw)


def set_system_time(t: datetime) -> None:
    """Set the system clock; a naive datetime is taken as UTC."""
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    time.clock_settime(time.CLOCK_REALTIME, t.timestamp())