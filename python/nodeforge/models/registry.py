"""
nodeforge/models/registry.py

Defines Pydantic models for the external device registry (the tailnet):
 - RegistryDevice
 - TagFilter
 - DeletionFailure
 - ReconcileReport
"""

from __future__ import annotations

from typing import FrozenSet, List, Optional

from pydantic import BaseModel, Field


class RegistryDevice(BaseModel):
    """A device as reported by the registry. Owned by the registry, not by us."""

    id: str
    hostname: str
    name: str = ""
    tags: FrozenSet[str] = Field(default_factory=frozenset)


class TagFilter(BaseModel):
    """Matches devices carrying every tag in `required_tags`."""

    required_tags: FrozenSet[str] = Field(default_factory=frozenset)

    def __call__(self, device: RegistryDevice) -> bool:
        return self.required_tags <= device.tags


class DeletionFailure(BaseModel):
    hostname: str
    device_id: str
    error: str


class ReconcileReport(BaseModel):
    """Outcome of one registry reconciliation pass.

    Attributes:
        deleted: Hostnames of orphaned devices that were removed.
        kept: Hostnames of matching devices that are still expected.
        failures: Orphans whose deletion failed.
        error: Set when the registry could not be listed at all.
    """

    deleted: List[str] = Field(default_factory=list)
    kept: List[str] = Field(default_factory=list)
    failures: List[DeletionFailure] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.failures and self.error is None
