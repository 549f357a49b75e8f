"""Host helpers: DHCP lease lookup, MAC trimming and local users."""

from __future__ import annotations

import functools
import grp
import logging
import os
import pwd
import re
import sys
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

LEASES_PATH = "/var/db/dhcpd_leases"

# UNIX_PATH_MAX of the running platform.
UNIX_PATH_MAX = 108 if sys.platform.startswith("linux") else 104

FALLBACK_USER = "macvz"

_LEADING_ZERO = re.compile(r"0([A-Fa-f0-9](:|$))")
_VALID_NAME = "^[a-z_][a-z0-9_-]*$"
_VALID_NAME_RE = re.compile(r"[a-z_][a-z0-9_-]*")


@dataclass
class DHCPEntry:
    name: str = ""
    ip_address: str = ""
    hw_address: str = ""
    identifier: str = ""
    lease: str = ""


def parse_dhcpd_leases(stream: Union[str, Iterable[str]]) -> list[DHCPEntry]:
    """Parse the contents of a dhcpd_leases file."""
    if isinstance(stream, str):
        stream = stream.splitlines()
    entries: list[DHCPEntry] = []
    current: Optional[DHCPEntry] = None
    for raw in stream:
        line = raw.strip()
        if line == "{":
            current = DHCPEntry()
            continue
        if line == "}":
            if current is None:
                raise ValueError("unexpected '}' in dhcp leases file")
            entries.append(replace(current))
            continue

        key, sep, value = line.partition("=")
        if not sep:
            raise ValueError(f"invalid line in dhcp leases file: {line}")
        if current is None:
            raise ValueError(f"line outside of an entry in dhcp leases file: {line}")
        if key == "name":
            current.name = value
        elif key == "ip_address":
            current.ip_address = value
        elif key == "hw_address":
            # Hardware addresses carry a "1," type prefix.
            current.hw_address = value[2:]
        elif key == "identifier":
            current.identifier = value
        elif key == "lease":
            current.lease = value
        else:
            raise ValueError(f"unable to parse line: {line}")
    return entries


def get_ip_address_from_file(mac: str, path: str) -> str:
    """Return the IP address leased to ``mac`` according to the leases file."""
    logger.debug("Searching for %s in %s ...", mac, path)
    with open(path, encoding="utf-8") as stream:
        entries = parse_dhcpd_leases(stream)
    logger.debug("Found %d entries in %s!", len(entries), path)
    for entry in entries:
        logger.debug("dhcp entry: %s", entry)
        if entry.hw_address == mac:
            logger.debug("Found match: %s", mac)
            return entry.ip_address
    raise LookupError(f"could not find an IP address for {mac}")


def get_ip_from_mac(mac: str) -> str:
    """Return the IP address the host DHCP server leased to ``mac``."""
    return get_ip_address_from_file(trim_mac_address(mac), LEASES_PATH)


def trim_mac_address(mac_address: str) -> str:
    """Drop the leading zero of each octet, as the DHCP server writes them."""
    return _LEADING_ZERO.sub(r"\1", mac_address)


@dataclass(frozen=True)
class User:
    user: str
    uid: int
    group: str
    gid: int


@dataclass(frozen=True)
class Group:
    name: str
    gid: int


_users: dict[str, User] = {}
_groups: dict[str, Group] = {}


def lookup_user(name: str) -> User:
    """Look a user up by name; results are cached."""
    if name not in _users:
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            raise LookupError(f"unknown user {name!r}") from None
        try:
            group = grp.getgrgid(entry.pw_gid)
        except KeyError:
            raise LookupError(f"unknown group id {entry.pw_gid}") from None
        _users[name] = User(
            user=entry.pw_name, uid=entry.pw_uid, group=group.gr_name, gid=entry.pw_gid
        )
    return _users[name]


def lookup_group(name: str) -> Group:
    """Look a group up by name; results are cached."""
    if name not in _groups:
        try:
            entry = grp.getgrnam(name)
        except KeyError:
            raise LookupError(f"unknown group {name!r}") from None
        _groups[name] = Group(name=entry.gr_name, gid=entry.gr_gid)
    return _groups[name]


@functools.lru_cache(maxsize=None)
def _current_user() -> tuple[User, str]:
    uid = os.getuid()
    try:
        entry = pwd.getpwuid(uid)
    except KeyError:
        raise LookupError(f"unknown user id {uid}") from None
    try:
        group_name = grp.getgrgid(entry.pw_gid).gr_name
    except KeyError:
        group_name = str(entry.pw_gid)

    username = entry.pw_name
    warning = ""
    # useradd only accepts names matching this pattern.
    if not _VALID_NAME_RE.fullmatch(username):
        warning = (
            f"local user {username!r} is not a valid Linux username "
            f"(must match {_VALID_NAME!r}); using {FALLBACK_USER!r} username instead"
        )
        username = FALLBACK_USER
    return User(user=username, uid=entry.pw_uid, group=group_name, gid=entry.pw_gid), warning


def macvz_user(warn: bool) -> User:
    """Return the current user, renamed to a valid Linux username if needed."""
    user, warning = _current_user()
    if warn and warning:
        logger.warning(warning)
    return user