"""Proxmox VE API access."""

from lxcforge.proxmox.client import ProxmoxClient
from lxcforge.proxmox.tasks import wait_for_task, is_task_success
from lxcforge.proxmox.utils import extract_ip_from_net0, static_ip_from_config

__all__ = [
    "ProxmoxClient",
    "wait_for_task",
    "is_task_success",
    "extract_ip_from_net0",
    "static_ip_from_config",
]
