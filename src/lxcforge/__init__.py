"""
lxcforge - LXC container provisioning on Proxmox VE.

Creates containers through the Proxmox API, configures them over SSH or
`pct exec`, discovers the services they run and streams progress live.
"""

__version__ = "0.1.0"

# Re-export key components for easier access
from lxcforge.models.config import ForgeConfig
from lxcforge.models.job import ContainerConfig, ContainerJob
from lxcforge.models.template import TemplateSpec

__all__ = [
    "ForgeConfig",
    "ContainerConfig",
    "ContainerJob",
    "TemplateSpec",
]
