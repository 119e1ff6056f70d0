"""
nodeforge.providers

Provisioning provider interface and implementations.
"""

from nodeforge.providers.base import ProvisioningProvider
from nodeforge.providers.hetzner import HetznerProvider

__all__ = [
    "ProvisioningProvider",
    "HetznerProvider",
]
