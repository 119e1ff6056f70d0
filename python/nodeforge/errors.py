"""
nodeforge/errors.py

Exception types raised by the orchestrator:
 - ConfigError: invalid topology, raised before any provider call.
 - ProvisioningError: a create/attach/delete call failed at the provider.
 - RegistryError: a device registry list/delete call failed.
 - TemplateError: the bootstrap template could not be loaded.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from nodeforge.models.topology import Role


class NodeforgeError(Exception):
    """Base class for all nodeforge errors."""


class ConfigError(NodeforgeError):
    """The requested topology is invalid (counts, address ranges, names)."""


class ProvisioningError(NodeforgeError):
    """A provisioning provider call failed.

    Attributes:
        role: The role whose rollout was affected, if any.
        index: The node index within the role, if any.
        cause: The underlying provider exception.
    """

    def __init__(
        self,
        message: str,
        role: Optional[Role] = None,
        index: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.index = index
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        where = []
        if self.role is not None:
            where.append(f"role={self.role.value}")
        if self.index is not None:
            where.append(f"index={self.index}")
        if self.cause is not None:
            where.append(f"cause={self.cause!r}")
        return f"{base} ({', '.join(where)})" if where else base


class RegistryError(NodeforgeError):
    """A device registry call failed.

    Attributes:
        hostname: Hostname of the affected device, if known.
        device_id: Registry id of the affected device, if known.
    """

    def __init__(
        self,
        message: str,
        hostname: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.device_id = device_id


class TemplateError(NodeforgeError):
    """The bootstrap template could not be loaded. render() itself never raises."""
