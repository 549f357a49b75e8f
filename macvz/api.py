"""Messages exchanged between the guest agent and the host agent."""

from __future__ import annotations

import ipaddress
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")

ZERO_TIME = "0001-01-01T00:00:00Z"

_TIME_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2})T(\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def _normalize_ip(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _parse_ip(value: Any) -> Optional[IPAddress]:
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return _normalize_ip(value)
    return _normalize_ip(ipaddress.ip_address(value))


def _format_time(t: Optional[datetime]) -> str:
    if t is None:
        return ZERO_TIME
    offset = t.utcoffset() or timedelta(0)
    text = (
        f"{t.year:04d}-{t.month:02d}-{t.day:02d}"
        f"T{t.hour:02d}:{t.minute:02d}:{t.second:02d}"
    )
    fraction = f"{t.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    if offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset > timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    match = _TIME_RE.fullmatch(value)
    if match is None:
        raise ValueError(f"invalid time {value!r}")
    date_part, time_part, fraction, zone = match.groups()
    parsed = datetime.strptime(f"{date_part}T{time_part}", "%Y-%m-%dT%H:%M:%S")
    if fraction:
        parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    parsed = parsed.replace(tzinfo=tz)
    if parsed == datetime(1, 1, 1, tzinfo=timezone.utc):
        return None
    return parsed


@dataclass
class IPPort:
    """An IP address and a TCP port."""

    ip: Optional[IPAddress] = None
    port: int = 0

    def __post_init__(self) -> None:
        self.ip = _parse_ip(self.ip)

    def __str__(self) -> str:
        host = "<nil>" if self.ip is None else str(self.ip)
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {"ip": "" if self.ip is None else str(self.ip), "port": self.port}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IPPort":
        return cls(ip=_parse_ip(data.get("ip")), port=int(data.get("port") or 0))


def _ports_from(items: Any) -> list[IPPort]:
    return [IPPort.from_dict(item) for item in items or []]


@dataclass
class Info:
    """Information the guest agent publishes once on connection."""

    local_ports: list[IPPort] = field(default_factory=list)

    def to_json(self) -> str:
        payload = {"localPorts": [p.to_dict() for p in self.local_ports]}
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "Info":
        data = json.loads(text)
        return cls(local_ports=_ports_from(data.get("localPorts")))


@dataclass
class Event:
    """A change in the set of ports listening inside the guest."""

    time: Optional[datetime] = None
    local_ports_added: list[IPPort] = field(default_factory=list)
    local_ports_removed: list[IPPort] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        payload: dict[str, Any] = {"time": _format_time(self.time)}
        if self.local_ports_added:
            payload["localPortsAdded"] = [p.to_dict() for p in self.local_ports_added]
        if self.local_ports_removed:
            payload["localPortsRemoved"] = [
                p.to_dict() for p in self.local_ports_removed
            ]
        if self.errors:
            payload["errors"] = list(self.errors)
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "Event":
        data = json.loads(text)
        return cls(
            time=_parse_time(data.get("time")),
            local_ports_added=_ports_from(data.get("localPortsAdded")),
            local_ports_removed=_ports_from(data.get("localPortsRemoved")),
            errors=list(data.get("errors") or []),
        )

    def is_empty(self) -> bool:
        """True when the event carries nothing besides its time."""
        return not (self.local_ports_added or self.local_ports_removed or self.errors)