"""Parser for the kernel's /proc/net/tcp and /proc/net/tcp6 tables."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

TCP_ESTABLISHED = 0x1
TCP_LISTEN = 0xA

_HEX = re.compile(r"[0-9A-Fa-f]+")


class Kind(str, Enum):
    TCP = "tcp"
    TCP6 = "tcp6"


@dataclass(frozen=True)
class Entry:
    kind: Kind
    ip: IPAddress
    port: int
    state: int


_PROC_FILES = (
    ("/proc/net/tcp", Kind.TCP),
    ("/proc/net/tcp6", Kind.TCP6),
)


def _parse_hex(text: str, bits: int) -> int:
    if not _HEX.fullmatch(text):
        raise ValueError(f"invalid hexadecimal number {text!r}")
    value = int(text, 16)
    if value >= 1 << bits:
        raise ValueError(f"value {text!r} out of range")
    return value


def parse_address(s: str) -> tuple[IPAddress, int]:
    """Parse an address such as "0100007F:0050" into (127.0.0.1, 80).

    The kernel writes each 4-byte group little endian, as on little endian hosts.
    """
    parts = s.split(":", 1)
    if len(parts) != 2:
        raise ValueError(f"unparsable address {s!r}")
    hex_ip, hex_port = parts
    if len(hex_ip) not in (8, 32):
        raise ValueError(
            f"unparsable address {s!r}, expected length of {hex_ip!r} "
            f"to be 8 or 32, got {len(hex_ip)}"
        )
    if not _HEX.fullmatch(hex_ip):
        raise ValueError(f"unparsable address {s!r}: unparsable quartet in {hex_ip!r}")
    raw = b"".join(
        bytes.fromhex(hex_ip[start:start + 8])[::-1]
        for start in range(0, len(hex_ip), 8)
    )
    ip = ipaddress.ip_address(raw)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    try:
        port = _parse_hex(hex_port, 16)
    except ValueError:
        raise ValueError(
            f"unparsable address {s!r}: unparsable port {hex_port!r}"
        ) from None
    return ip, port


def parse(stream: Union[str, Iterable[str]], kind: Union[Kind, str]) -> list[Entry]:
    """Parse the lines of a /proc/net/tcp{,6} table."""
    try:
        kind = Kind(kind)
    except ValueError:
        raise ValueError(f"unexpected kind {kind!r}") from None
    if isinstance(stream, str):
        stream = stream.splitlines()

    entries: list[Entry] = []
    field_names: dict[str, int] = {}
    for index, raw in enumerate(stream):
        line = raw.strip()
        if not line:
            continue
        fields = line.split()
        if index == 0:
            field_names = {name: i for i, name in enumerate(fields)}
            for required in ("local_address", "st"):
                if required not in field_names:
                    raise ValueError(f'field "{required}" not found')
            continue
        address_index = field_names.get("local_address", 0)
        state_index = field_names.get("st", 0)
        if max(address_index, state_index) >= len(fields):
            raise ValueError(f"truncated line {line!r}")
        ip, port = parse_address(fields[address_index])
        state = _parse_hex(fields[state_index], 8)
        entries.append(Entry(kind=kind, ip=ip, port=port, state=state))
    return entries


def parse_files() -> list[Entry]:
    """Parse /proc/net/tcp and /proc/net/tcp6, skipping files that do not exist."""
    entries: list[Entry] = []
    for path, kind in _PROC_FILES:
        try:
            with open(path, encoding="ascii") as stream:
                entries.extend(parse(stream, kind))
        except FileNotFoundError:
            continue
    return entries