"""Helpers for Proxmox configuration strings."""

import ipaddress
import re
from typing import Optional


_NET0_IP_RE = re.compile(r"ip=([^,/]+)")
_STATIC_IP_RE = re.compile(r"ip=(\d+\.\d+\.\d+\.\d+)")


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def extract_ip_from_net0(net0: Optional[str]) -> Optional[str]:
    """Address from a net0 value like 'name=eth0,bridge=vmbr0,ip=10.0.0.5/24'.

    Returns None for dhcp, manual or missing addresses.
    """
    if not net0:
        return None
    match = _NET0_IP_RE.search(net0)
    if not match:
        return None
    ip = match.group(1)
    if ip in ("dhcp", "manual") or not is_ipv4(ip):
        return None
    return ip


def static_ip_from_config(ip_config: Optional[str]) -> Optional[str]:
    """Static address from a job's ip_config, None for dhcp."""
    if not ip_config:
        return None
    value = ip_config if ip_config.startswith("ip=") else f"ip={ip_config}"
    match = _STATIC_IP_RE.search(value)
    return match.group(1) if match else None


def to_form_value(value):
    """Proxmox expects booleans as 1/0."""
    if isinstance(value, bool):
        return 1 if value else 0
    return value
