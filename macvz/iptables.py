"""Discovery of ports published through CNI portmap NAT rules."""

from __future__ import annotations

import ipaddress
import re
import shutil
import socket
import subprocess
from dataclasses import dataclass
from typing import Iterable, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Matches the DNAT rules portmap adds for a container, e.g.
#   -A CNI-DN-2e2f8d5b91929ef9fc152 -d 127.0.0.1/32 -p tcp -m tcp --dport 8081 -j DNAT ...
#   -A CNI-DN-04579c7bb67f4c3f6cca0 -p tcp -m tcp --dport 8082 -j DNAT ...
_FIND_PORT = re.compile(
    r"-A\s+CNI-DN-\w*\s+"
    r"(?:-d ((?:\b25[0-5]|\b2[0-4][0-9]|\b[01]?[0-9][0-9]?)"
    r"(?:\.(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)){3}))?"
    r"(?:/32\s+)?-p (tcp)?.*--dport (\d+) -j DNAT",
    re.ASCII,
)


@dataclass(frozen=True)
class Entry:
    tcp: bool
    ip: Optional[IPAddress]
    port: int


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def parse_ports_from_rules(rules: Iterable[str]) -> list[Entry]:
    """Extract forwarded ports from `iptables -S` rule lines."""
    entries = []
    for rule in rules:
        found = _FIND_PORT.search(rule)
        if found is None:
            continue
        ip_text, protocol, port_text = found.groups()
        entries.append(
            Entry(
                tcp=protocol == "tcp",
                # Without a destination the rule applies to all interfaces.
                ip=_parse_ip(ip_text or "0.0.0.0"),
                port=int(port_text),
            )
        )
    return entries


def list_nat_rules(path: str) -> list[str]:
    """Run `iptables -t nat -S` and return its output, one rule per line."""
    completed = subprocess.run(
        [path, "-t", "nat", "-S"],
        capture_output=True,
        text=True,
        check=True,
    )
    rules = completed.stdout.split("\n")
    if rules and rules[-1] == "":
        rules.pop()
    return rules


def check_ports_open(entries: Iterable[Entry]) -> list[Entry]:
    """Keep non-TCP entries and TCP entries that accept a connection."""
    open_entries = []
    for entry in entries:
        if not entry.tcp:
            open_entries.append(entry)
            continue
        host = "<nil>" if entry.ip is None else str(entry.ip)
        try:
            with socket.create_connection((host, entry.port), timeout=1.0):
                pass
        except OSError:
            continue
        open_entries.append(entry)
    return open_entries


def get_ports() -> list[Entry]:
    """Return the open ports forwarded by NAT rules; empty if iptables is absent."""
    path = shutil.which("iptables")
    if path is None:
        return []
    return check_ports_open(parse_ports_from_rules(list_nat_rules(path)))