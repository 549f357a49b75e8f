"""Forwarding of guest TCP ports and sockets to the host through SSH."""

from __future__ import annotations

import ipaddress
import logging
import os
import shutil
import socket
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from macvz.api import IPV4_LOOPBACK1, Event, IPPort, _parse_ip

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_IPV6_LOOPBACK = ipaddress.IPv6Address("::1")
_ACCEPT_POLL = 0.2
_CHUNK_SIZE = 32 * 1024


class Verb(str, Enum):
    FORWARD = "forward"
    CANCEL = "cancel"


@dataclass
class PortForward:
    """A rule mapping guest ports or a guest socket to the host."""

    guest_ip: Optional[IPAddress] = None
    guest_ip_must_be_zero: bool = False
    guest_port: int = 0
    guest_port_range: tuple[int, int] = (0, 0)
    guest_socket: str = ""
    host_ip: Optional[IPAddress] = None
    host_port: int = 0
    host_port_range: tuple[int, int] = (0, 0)
    host_socket: str = ""
    ignore: bool = False

    def __post_init__(self) -> None:
        self.guest_ip = _parse_ip(self.guest_ip)
        self.host_ip = _parse_ip(self.host_ip)
        self.guest_port_range = tuple(self.guest_port_range)
        self.host_port_range = tuple(self.host_port_range)


@dataclass
class SSHConfig:
    """The ssh binary and the options given to every invocation."""

    binary: str = "ssh"
    additional_args: list[str] = field(default_factory=list)

    def args(self) -> list[str]:
        return list(self.additional_args)


def _is_unspecified(ip: Optional[IPAddress]) -> bool:
    return ip is not None and ip.is_unspecified


def host_address(rule: PortForward, guest: IPPort) -> str:
    """Return the host side address for ``guest`` under ``rule``."""
    if rule.host_socket:
        return rule.host_socket
    if guest.port == 0:
        # The guest side is a socket.
        port = rule.host_port
    else:
        port = guest.port + rule.host_port_range[0] - rule.guest_port_range[0]
    return str(IPPort(ip=rule.host_ip, port=port))


class PortForwarder:
    """Applies forwarding rules to the port events reported by the guest."""

    def __init__(
        self,
        ssh_config: SSHConfig,
        rules: list[PortForward],
        forward: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.ssh_config = ssh_config
        self.rules = list(rules)
        self._forward = forward or forward_tcp

    def forwarding_addresses(self, guest: IPPort) -> tuple[str, str]:
        """Return (host address, guest address); the host one is empty if not forwarded."""
        for rule in self.rules:
            if rule.guest_socket:
                continue
            low, high = rule.guest_port_range
            if guest.port < low or guest.port > high:
                continue
            matched = (
                _is_unspecified(guest.ip)
                or guest.ip == rule.guest_ip
                or (guest.ip == _IPV6_LOOPBACK and rule.guest_ip == IPV4_LOOPBACK1)
                # With guest_ip_must_be_zero, 0.0.0.0 must match exactly,
                # which the first condition already covers.
                or (_is_unspecified(rule.guest_ip) and not rule.guest_ip_must_be_zero)
            )
            if not matched:
                continue
            if rule.ignore:
                if _is_unspecified(guest.ip) and not _is_unspecified(rule.guest_ip):
                    continue
                break
            return host_address(rule, guest), str(guest)
        return "", str(guest)

    def on_event(self, ssh_remote: str, event: Event) -> None:
        """Cancel forwards for removed ports, then set up forwards for added ones."""
        for port in event.local_ports_removed:
            local, remote = self.forwarding_addresses(port)
            if not local:
                continue
            logger.info("Stopping forwarding TCP from %s to %s", remote, local)
            try:
                self._forward(self.ssh_config, ssh_remote, local, remote, Verb.CANCEL)
            except Exception as exc:
                logger.warning("failed to stop forwarding tcp port %d: %s", port.port, exc)
        for port in event.local_ports_added:
            local, remote = self.forwarding_addresses(port)
            if not local:
                logger.info("Not forwarding TCP %s", remote)
                continue
            logger.info("Forwarding TCP from %s to %s", remote, local)
            try:
                self._forward(self.ssh_config, ssh_remote, local, remote, Verb.FORWARD)
            except Exception as exc:
                logger.warning(
                    "failed to set up forwarding tcp port %d "
                    "(negligible if already forwarded): %s",
                    port.port,
                    exc,
                )


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _cleanup(path: str, when: str) -> None:
    try:
        _remove_all(path)
    except OSError as exc:
        logger.warning("Failed to clean up %r (host) %s: %s", path, when, exc)


def forward_ssh(
    ssh_config: SSHConfig,
    ssh_remote: str,
    local: str,
    remote: str,
    verb: Union[Verb, str],
) -> None:
    """Ask the SSH master connection to start or stop a local forward."""
    verb = Verb(verb)
    args = ssh_config.args() + [
        "-T",
        "-O", verb.value,
        "-L", f"{local}:{remote}",
        "-N",
        "-f",
        ssh_remote,
        "--",
    ]
    is_socket = local.startswith("/")
    if is_socket:
        if verb is Verb.FORWARD:
            logger.info("Forwarding %r (guest) to %r (host)", remote, local)
            _cleanup(local, "before setting up forwarding")
            try:
                os.makedirs(os.path.dirname(local), mode=0o750, exist_ok=True)
            except OSError as exc:
                raise OSError(
                    exc.errno,
                    f"can't create directory for local socket {local!r}: {exc.strerror}",
                ) from exc
        else:
            logger.info("Stopping forwarding %r (guest) to %r (host)", remote, local)

    command = [ssh_config.binary, *args]
    logger.debug("forwarding: %s", command)
    try:
        completed = subprocess.run(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    finally:
        if is_socket and verb is Verb.CANCEL:
            _cleanup(local, "after stopping forwarding")

    if completed.returncode != 0:
        if is_socket and verb is Verb.FORWARD:
            logger.warning(
                "Failed to set up forward from %r (guest) to %r (host)", remote, local
            )
            _cleanup(local, "after forwarding failed")
        stdout = completed.stdout.decode("utf-8", errors="replace")
        stderr = completed.stderr.decode("utf-8", errors="replace")
        raise RuntimeError(
            f"failed to run {command}: {stdout!r}: exit status "
            f"{completed.returncode}: {stderr.strip()}"
        )


def _split_host_port(address: str) -> tuple[str, str]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r}: missing port in address")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port


_pseudo_loopback_forwarders: dict[str, "PseudoLoopbackForwarder"] = {}


def forward_tcp(
    ssh_config: SSHConfig,
    ssh_remote: str,
    local: str,
    remote: str,
    verb: Union[Verb, str],
) -> None:
    """Forward a TCP port; not thread-safe.

    On macOS, listening on 127.0.0.1 below port 1024 needs root while
    0.0.0.0 does not, so such ports are served by a pseudo-loopback
    forwarder that rejects non-loopback peers and relays to an SSH-forwarded
    unix socket.
    """
    verb = Verb(verb)
    if sys.platform != "darwin" or local.startswith("/"):
        forward_ssh(ssh_config, ssh_remote, local, remote, verb)
        return
    host, port_text = _split_host_port(local)
    local_port = int(port_text)
    try:
        local_ip = _parse_ip(host)
    except ValueError:
        local_ip = None
    if local_ip != IPV4_LOOPBACK1 or local_port >= 1024:
        forward_ssh(ssh_config, ssh_remote, local, remote, verb)
        return

    logger.debug("using pseudoloopback ssh forwarder for %r", local)
    if verb is Verb.CANCEL:
        plf = _pseudo_loopback_forwarders.pop(local, None)
        if plf is None:
            logger.warning("forwarding for %r seems already cancelled?", local)
            return
        local_unix = plf.unix_sock
        try:
            plf.close()
        except OSError:
            pass
        forward_ssh(ssh_config, ssh_remote, local_unix, remote, verb)
        return

    local_unix_dir = tempfile.mkdtemp(dir="/tmp", prefix=f"lima-psl-{local_ip}-{local_port}-")
    local_unix = os.path.join(local_unix_dir, "sock")
    logger.debug("forwarding %r to %r", local_unix, remote)
    forward_ssh(ssh_config, ssh_remote, local_unix, remote, verb)
    try:
        plf = PseudoLoopbackForwarder(local_port, local_unix)
    except OSError:
        try:
            forward_ssh(ssh_config, ssh_remote, local_unix, remote, Verb.CANCEL)
        except Exception as exc:
            logger.warning("failed to cancel forwarding %r to %r: %s", local_unix, remote, exc)
        raise
    plf.on_close = lambda: shutil.rmtree(local_unix_dir, ignore_errors=True)
    _pseudo_loopback_forwarders[local] = plf

    def serve() -> None:
        try:
            plf.serve()
        except OSError as exc:
            logger.warning("pseudoloopback forwarder crashed: %s", exc)

    threading.Thread(target=serve, daemon=True).start()


def _bicopy(a: socket.socket, b: socket.socket) -> None:
    def pump(src: socket.socket, dst: socket.socket) -> None:
        try:
            while True:
                data = src.recv(_CHUNK_SIZE)
                if not data:
                    break
                dst.sendall(data)
        except OSError:
            pass
        finally:
            try:
                dst.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    reverse = threading.Thread(target=pump, args=(b, a), daemon=True)
    reverse.start()
    pump(a, b)
    reverse.join()


class PseudoLoopbackForwarder:
    """Listens on 0.0.0.0 and relays loopback clients to a unix socket."""

    def __init__(
        self,
        local_port: int,
        unix_sock: str,
        on_close: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.unix_sock = unix_sock
        self.on_close = on_close
        self._closed = threading.Event()
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._listener.bind(("0.0.0.0", local_port))
            self._listener.listen()
            self._listener.settimeout(_ACCEPT_POLL)
        except OSError:
            self._listener.close()
            raise

    @property
    def port(self) -> int:
        """The TCP port the forwarder listens on."""
        return self._listener.getsockname()[1]

    def serve(self) -> None:
        """Accept connections until closed."""
        try:
            while not self._closed.is_set():
                try:
                    conn, address = self._listener.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self._closed.is_set():
                        return
                    raise
                if address[0] != "127.0.0.1":
                    logger.debug(
                        "pseudoloopback forwarder: rejecting non-loopback remote address %r",
                        address,
                    )
                    conn.close()
                    continue
                conn.settimeout(None)
                threading.Thread(target=self._forward_logged, args=(conn,), daemon=True).start()
        finally:
            self._listener.close()

    def _forward_logged(self, conn: socket.socket) -> None:
        try:
            self._forward(conn)
        except OSError as exc:
            logger.error("%s", exc)

    def _forward(self, conn: socket.socket) -> None:
        with conn, socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as unix_conn:
            unix_conn.connect(self.unix_sock)
            _bicopy(conn, unix_conn)

    def close(self) -> Any:
        """Stop listening and run the close hook, returning its result."""
        self._closed.set()
        self._listener.close()
        if self.on_close is not None:
            return self.on_close()
        return None