import ipaddress
import os
import socket
import stat
import subprocess

import pytest

from macvz.iptables import (
    Entry,
    check_ports_open,
    get_ports,
    list_nat_rules,
    parse_ports_from_rules,
)

# Output of `iptables -t nat -S` with two containers publishing ports 8082
# (on every address) and 8081 (on the loopback address only).
NAT_RULES = r"""# Warning: iptables-legacy tables present, use iptables-legacy to see them
-P PREROUTING ACCEPT
-P OUTPUT ACCEPT
-N CNI-DN-1111aaaa
-N CNI-DN-2222bbbb
-N CNI-HOSTPORT-DNAT
-N CNI-HOSTPORT-MASQ
-A PREROUTING -m addrtype --dst-type LOCAL -j CNI-HOSTPORT-DNAT
-A POSTROUTING -s 10.4.0.7/32 -m comment --comment "name: \"bridge\" id: \"example\"" -j CNI-2222bbbb00
-A CNI-2222bbbb00 ! -d 224.0.0.0/4 -m comment --comment "name: \"bridge\"" -j MASQUERADE
-A CNI-DN-1111aaaa -s 10.4.0.0/24 -p tcp -m tcp --dport 8082 -j CNI-HOSTPORT-SETMARK
-A CNI-DN-1111aaaa -p tcp -m tcp --dport 8082 -j DNAT --to-destination 10.4.0.10:80
-A CNI-DN-2222bbbb -s 127.0.0.1/32 -d 127.0.0.1/32 -p tcp -m tcp --dport 8081 -j CNI-HOSTPORT-SETMARK
-A CNI-DN-2222bbbb -d 127.0.0.1/32 -p tcp -m tcp --dport 8081 -j DNAT --to-destination 10.4.0.7:80
-A CNI-HOSTPORT-DNAT -p tcp -m comment --comment "dnat" -m multiport --dports 8081 -j CNI-DN-2222bbbb
-A CNI-HOSTPORT-MASQ -m mark --mark 0x2000/0x2000 -j MASQUERADE
"""

UDP_RULE = "-A CNI-DN-abc -p udp -m udp --dport 5353 -j DNAT --to-destination 10.4.0.9:53"


def _rules():
    rules = NAT_RULES.split("\n")
    if rules and rules[-1] == "":
        rules.pop()
    return rules


def _fake_iptables(directory, body):
    path = directory / "iptables"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def test_parse_ports_from_rules():
    res = parse_ports_from_rules(_rules())
    assert len(res) == 2
    assert str(res[0].ip) == "0.0.0.0"
    assert res[0].port == 8082
    assert res[0].tcp is True
    assert str(res[1].ip) == "127.0.0.1"
    assert res[1].port == 8081
    assert res[1].tcp is True


def test_parse_non_tcp_rule():
    res = parse_ports_from_rules([UDP_RULE])
    assert res == [Entry(tcp=False, ip=ipaddress.ip_address("0.0.0.0"), port=5353)]


def test_parse_ignores_unrelated_rules():
    assert parse_ports_from_rules(["-P INPUT ACCEPT", ""]) == []


def test_check_ports_open_keeps_listening_and_non_tcp():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    open_port = listener.getsockname()[1]

    closed = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    closed.bind(("127.0.0.1", 0))
    closed_port = closed.getsockname()[1]
    closed.close()

    loopback = ipaddress.ip_address("127.0.0.1")
    udp = Entry(tcp=False, ip=loopback, port=closed_port)
    live = Entry(tcp=True, ip=loopback, port=open_port)
    dead = Entry(tcp=True, ip=loopback, port=closed_port)
    try:
        assert check_ports_open([udp, live, dead]) == [udp, live]
    finally:
        listener.close()


def test_list_nat_rules_passes_arguments(tmp_path):
    script = _fake_iptables(tmp_path, 'echo "$@"\necho second\n')
    assert list_nat_rules(str(script)) == ["-t nat -S", "second"]


def test_list_nat_rules_failure(tmp_path):
    script = _fake_iptables(tmp_path, "exit 3\n")
    with pytest.raises(subprocess.CalledProcessError):
        list_nat_rules(str(script))


def test_get_ports_without_iptables(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    assert get_ports() == []


def test_get_ports_with_fake_iptables(tmp_path, monkeypatch):
    _fake_iptables(tmp_path, f"cat <<'EOF'\n{UDP_RULE}\nEOF\n")
    monkeypatch.setenv("PATH", str(tmp_path) + os.pathsep + os.environ.get("PATH", ""))
    assert get_ports() == [
        Entry(tcp=False, ip=ipaddress.ip_address("0.0.0.0"), port=5353)
    ]