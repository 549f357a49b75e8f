import grp
import io
import os
import pwd
import re

import pytest

from macvz.osutil import (
    DHCPEntry,
    get_ip_address_from_file,
    lookup_group,
    lookup_user,
    macvz_user,
    parse_dhcpd_leases,
    trim_mac_address,
)

LEASES = """{
\tname=guest-one
\tip_address=192.168.64.2
\thw_address=1,aa:bb:cc:0:0:1
\tidentifier=1,aa:bb:cc:0:0:1
\tlease=0x62a1b2c3
}
{
\tname=guest-two
\tip_address=192.168.64.3
\thw_address=1,aa:bb:cc:0:0:2
\tidentifier=1,aa:bb:cc:0:0:2
\tlease=0x62a1b2c4
}
"""


def test_parse_leases():
    entries = parse_dhcpd_leases(io.StringIO(LEASES))
    assert entries == [
        DHCPEntry(
            name="guest-one",
            ip_address="192.168.64.2",
            hw_address="aa:bb:cc:0:0:1",
            identifier="1,aa:bb:cc:0:0:1",
            lease="0x62a1b2c3",
        ),
        DHCPEntry(
            name="guest-two",
            ip_address="192.168.64.3",
            hw_address="aa:bb:cc:0:0:2",
            identifier="1,aa:bb:cc:0:0:2",
            lease="0x62a1b2c4",
        ),
    ]


def test_parse_leases_invalid_line():
    with pytest.raises(ValueError, match="invalid line"):
        parse_dhcpd_leases("{\nname\n}\n")


def test_parse_leases_unknown_key():
    with pytest.raises(ValueError, match="unable to parse line"):
        parse_dhcpd_leases("{\ncolour=blue\n}\n")


def test_get_ip_address_from_file(tmp_path):
    leases = tmp_path / "dhcpd_leases"
    leases.write_text(LEASES)
    assert get_ip_address_from_file("aa:bb:cc:0:0:2", str(leases)) == "192.168.64.3"


def test_get_ip_address_from_file_missing_mac(tmp_path):
    leases = tmp_path / "dhcpd_leases"
    leases.write_text(LEASES)
    with pytest.raises(LookupError, match="could not find"):
        get_ip_address_from_file("aa:bb:cc:0:0:9", str(leases))


def test_trim_mac_address():
    assert trim_mac_address("aa:0b:0c:dd:0e:0f") == "aa:b:c:dd:e:f"


def test_trim_mac_address_double_zero():
    assert trim_mac_address("00:11") == "0:11"


def test_trim_mac_address_is_idempotent_on_trimmed():
    trimmed = trim_mac_address("aa:0b:0c:dd:0e:0f")
    assert trim_mac_address(trimmed) == trimmed


def test_lookup_user_current():
    name = pwd.getpwuid(os.getuid()).pw_name
    user = lookup_user(name)
    assert user.uid == os.getuid()
    assert user.user == name
    assert lookup_user(name) is user


def test_lookup_user_unknown():
    with pytest.raises(LookupError):
        lookup_user("no-such-user-macvz-test")


def test_lookup_group_current():
    name = grp.getgrgid(os.getgid()).gr_name
    group = lookup_group(name)
    assert group.gid == os.getgid()
    assert group.name == name


def test_lookup_group_unknown():
    with pytest.raises(LookupError):
        lookup_group("no-such-group-macvz-test")


def test_macvz_user_is_valid_linux_name():
    user = macvz_user(False)
    assert re.fullmatch(r"[a-z_][a-z0-9_-]*", user.user)
    assert user.uid == os.getuid()
    assert macvz_user(True) == user