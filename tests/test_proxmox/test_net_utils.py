"""Tests for Proxmox config string helpers."""

import pytest

from lxcforge.proxmox.utils import extract_ip_from_net0, static_ip_from_config, to_form_value


@pytest.mark.parametrize("net0,expected", [
    ("name=eth0,bridge=vmbr0,ip=10.0.0.5/24,gw=10.0.0.1", "10.0.0.5"),
    ("name=eth0,bridge=vmbr0,ip=dhcp", None),
    ("name=eth0,bridge=vmbr0,ip=manual", None),
    ("name=eth0,bridge=vmbr0", None),
    (None, None),
])
def test_extract_ip_from_net0(net0, expected):
    assert extract_ip_from_net0(net0) == expected


@pytest.mark.parametrize("ip_config,expected", [
    ("ip=192.168.1.20/24,gw=192.168.1.1", "192.168.1.20"),
    ("192.168.1.20/24", "192.168.1.20"),
    ("dhcp", None),
    ("ip=dhcp", None),
])
def test_static_ip_from_config(ip_config, expected):
    assert static_ip_from_config(ip_config) == expected


def test_to_form_value():
    assert to_form_value(True) == 1
    assert to_form_value(False) == 0
    assert to_form_value("x") == "x"
