"""Cloud-init data for an instance: template arguments, mounts and the guest agent."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable

_AGENT_PREFIX = "macvz-guestagent.Linux-"


@dataclass
class TemplateArgs:
    """Values substituted into the cloud-init templates."""

    name: str = ""  # instance name
    iid: str = ""  # instance id
    user: str = ""
    uid: int = 0
    ssh_pub_keys: list[str] = field(default_factory=list)
    mounts: list[str] = field(default_factory=list)  # absolute paths
    containerd_system: bool = False
    containerd_user: bool = False
    networks: list[tuple[str, str]] = field(default_factory=list)  # (MAC, interface)
    slirp_nic_name: str = ""
    slirp_gateway: str = ""
    slirp_dns: str = ""
    slirp_ip_address: str = ""
    udp_dns_local_port: int = 0
    tcp_dns_local_port: int = 0
    env: dict[str, str] = field(default_factory=dict)
    dns_addresses: list[str] = field(default_factory=list)


def validate_template_args(args: TemplateArgs) -> None:
    """Raise ValueError when the arguments cannot produce a usable guest."""
    if args.user == "root":
        raise ValueError('field User must not be "root"')
    if args.uid == 0:
        raise ValueError("field UID must not be 0")
    if not args.ssh_pub_keys:
        raise ValueError("field SSHPubKeys must be set")
    for index, mount in enumerate(args.mounts):
        if not os.path.isabs(mount):
            raise ValueError(f'field mounts[{index}] must be absolute, got "{mount}"')


def mount_script(locations: Iterable[str]) -> str:
    """Return the provisioning script mounting each location over virtiofs."""
    return "".join(
        f"sudo mkdir -p {location}\n"
        f"sudo mount -t virtiofs {location} {location}\n"
        for location in locations
    )


def _executable() -> str:
    return os.path.abspath(sys.argv[0])


def guest_agent_binary(arch: str) -> BinaryIO:
    """Open the guest agent binary for ``arch`` installed next to this program."""
    if not arch:
        raise ValueError("arch must be set")
    self_path = _executable()
    self_dir = os.path.dirname(self_path)
    candidates = [
        # Next to the executable, as in an application bundle.
        os.path.join(self_dir, _AGENT_PREFIX + arch),
        # Under <prefix>/share/macvz for an executable in <prefix>/bin.
        os.path.join(os.path.dirname(self_dir), "share", "macvz", _AGENT_PREFIX + arch),
    ]
    for candidate in candidates:
        try:
            return open(candidate, "rb")
        except FileNotFoundError:
            continue
    raise FileNotFoundError(
        f'failed to find "{_AGENT_PREFIX}{arch}" binary for "{self_path}", '
        f"attempted {candidates}"
    )