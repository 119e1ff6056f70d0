"""
nodeforge/registry/base.py

Device registry interface: the external service that tracks hosts joined to
the private mesh (the tailnet).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional

from pydantic import SecretStr

from nodeforge.models.registry import RegistryDevice

DeviceFilter = Callable[[RegistryDevice], bool]


class DeviceRegistry(ABC):
    """List/delete devices and mint registration keys.

    list_devices and create_registration_key raise RegistryError on failure;
    delete_device raises RegistryError carrying the device id.
    """

    @abstractmethod
    async def list_devices(
        self, tag_filter: Optional[DeviceFilter] = None
    ) -> List[RegistryDevice]: ...

    @abstractmethod
    async def delete_device(self, device_id: str) -> None: ...

    @abstractmethod
    async def create_registration_key(
        self,
        description: str,
        tags: Iterable[str],
        expiry_seconds: int = 1800,
    ) -> SecretStr:
        """A single-use, preauthorized key a new node uses to join the registry."""
