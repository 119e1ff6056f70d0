"""
nodeforge.registry

Device registry interface and the Tailscale implementation.
"""

from nodeforge.registry.base import DeviceFilter, DeviceRegistry
from nodeforge.registry.tailscale import TailscaleRegistry, parse_device

__all__ = [
    "DeviceFilter",
    "DeviceRegistry",
    "TailscaleRegistry",
    "parse_device",
]
