# macvz

A library of building blocks for running lightweight Linux virtual machines
from a macOS host. It covers both sides of the host/guest link:

- **Guest side**: discovery of listening TCP ports from `/proc/net/tcp{,6}`
  and of ports published through iptables NAT rules, reading the hardware
  clock and setting the system clock.
- **Host side**: SSH port forwarding rules, readiness checks run while a
  guest boots, following the host agent's event and log output, cloud-init
  template arguments, DHCP lease lookup, and a caching image downloader.
- **Shared**: the JSON messages exchanged between the two sides and the
  `<<EOF>>` framing used over the vsock connection.

## Installation

```
pip install macvz
```

Python 3.10 or later is required. The tests need the `test` extra:

```
pip install "macvz[test]"
pytest
```

## What is not included

The package is a library only. It installs no commands: there is no
command line for starting, stopping or opening a shell in an instance, and
no ready-made guest agent daemon that polls ports and reports them to the
host. It does not run a DNS responder for the guest, and it does not launch
or manage the virtual machine itself. The modules below supply the pieces
such programs are made from.

## Guest port discovery

```python
from macvz import procnettcp, iptables

with open("/proc/net/tcp") as stream:
    for entry in procnettcp.parse(stream, procnettcp.Kind.TCP):
        print(entry.ip, entry.port, entry.state)

ip, port = procnettcp.parse_address("0100007F:0050")   # 127.0.0.1, 80
```

`procnettcp.parse` accepts a string or any iterable of lines; the first line
must be the header naming `local_address` and `st`. `procnettcp.parse_files()`
reads both `/proc/net/tcp` and `/proc/net/tcp6`, skipping whichever is
missing. Listening sockets have `state == procnettcp.TCP_LISTEN`.

`iptables.parse_ports_from_rules(lines)` extracts the ports of CNI portmap
`DNAT` rules from `iptables -t nat -S` output. `iptables.get_ports()` runs
that command, keeps the TCP entries that accept a connection, and returns an
empty list when `iptables` is not installed.

## Messages between guest and host

`macvz.api` defines `IPPort`, `Info` (the ports published when the guest
connects) and `Event` (ports added and removed, plus errors). Each has
`to_json` / `from_json`; `Event.is_empty()` ignores the timestamp.

`macvz.vsockconn.VsockConnection` wraps a socket: `write_events(text)` sends
one message ended with `<<EOF>>`, and `read_events(callback)` calls the
callback with every complete message until the stream ends.

## Clock

`macvz.timesync.get_rtc_time()` reads `/dev/rtc` and returns a UTC
`datetime`; `decode_rtc_time(raw)` decodes a raw `struct rtc_time`.
`set_system_time(t)` sets the system clock (naive datetimes are taken as
UTC) and needs root.

## DHCP leases and MAC addresses

```python
from macvz import osutil

osutil.trim_mac_address("02:00:00:00:00:01")    # "2:0:0:0:0:1"
ip = osutil.get_ip_from_mac("02:00:00:00:00:01")
```

`get_ip_from_mac` looks the address up in `/var/db/dhcpd_leases` and raises
`LookupError` when no lease matches; `parse_dhcpd_leases` parses any text in
that format. `osutil.macvz_user(warn)` returns the current user, renamed to
`macvz` when the local name is not a valid Linux user name.
`lookup_user` and `lookup_group` return cached `User` and `Group` records.

## Port forwarding

```python
from macvz.api import Event, IPPort
from macvz.portforward import PortForward, PortForwarder, SSHConfig

rules = [PortForward(guest_ip="127.0.0.1", guest_port_range=(1, 65535),
                     host_ip="127.0.0.1", host_port_range=(1, 65535))]
forwarder = PortForwarder(SSHConfig(), rules)
forwarder.forwarding_addresses(IPPort(ip="127.0.0.1", port=8080))
# ("127.0.0.1:8080", "127.0.0.1:8080")
```

`PortForwarder.on_event(remote, event)` cancels forwards for removed ports
and sets up forwards for added ones. `forward_ssh` asks the SSH control
master to start or stop a forward (`Verb.FORWARD` / `Verb.CANCEL`).
`forward_tcp` does the same, except that on macOS loopback ports below 1024
are served by a `PseudoLoopbackForwarder`, which listens on all interfaces
but only accepts connections from `127.0.0.1`.

## Readiness checks

`macvz.requirements` provides `host_requirements(mac)`,
`essential_requirements()`, `optional_requirements(probes)` (one per
readiness `Probe`) and `final_requirements()`. `run_requirement` runs one
check on the host or over SSH; `wait_for_requirements(label, reqs, check)`
retries each check (60 tries, 10 seconds apart by default) and raises
`RequirementError` listing the checks that were not satisfied. A failing
fatal check stops at once.

## Host agent output

`macvz.events.watch(stdout_path, stderr_path, begin, on_event, cancel)`
follows the host agent's stdout for status `Event`s, passing each to
`on_event` until it returns true or `cancel` is set, and relays the JSON log
lines on stderr through `macvz.logjson.propagate_json`, which drops lines
older than `begin` and logs panic and fatal lines as errors.

## Cloud-init data

`macvz.cidata.TemplateArgs` holds the values for the cloud-init templates
and `validate_template_args` rejects a root user, UID 0, missing SSH keys
and relative mount paths. `mount_script(locations)` returns the virtiofs
mount commands, and `guest_agent_binary(arch)` opens the
`macvz-guestagent.Linux-<arch>` binary installed next to the running program
or under `<prefix>/share/macvz`.

## Downloading images

```python
from macvz import downloader

result = downloader.download("~/images/guest.img",
                             "https://example.com/guest.img",
                             cache_dir=downloader.default_cache_dir())
print(result.status)
```

An existing local file is never overwritten; the result then has status
`Status.SKIPPED`. A cached copy gives `Status.USED_CACHE`. An empty local
path downloads into the cache only, which requires a cache directory.
Local paths and `file://` URLs are copied and never cached.

## Other helpers

- `macvz.localpathutil.expand(path)` expands `~` and `~/...` and returns an
  absolute path; `~user` forms are rejected.
- `macvz.lockutil.dir_lock(directory)` is a context manager holding an
  exclusive `flock` on a directory; `with_dir_lock(directory, fn)` calls
  `fn` under it.
- `macvz.httpclientutil.get(session, url)` performs a GET and raises
  `HTTPStatusError` for a non-2XX status.
- `macvz.iso9660util.is_iso9660(path)` checks for an ISO 9660 volume, and
  `extract(tar_path, name, output)` copies one regular file out of a
  gzipped tarball.