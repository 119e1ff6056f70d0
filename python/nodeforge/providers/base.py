"""
nodeforge/providers/base.py

Abstract provisioning provider. The orchestrator only talks to this interface;
nodeforge.providers.hetzner implements it for Hetzner Cloud and the test suite
ships an in-memory fake.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List

from nodeforge.models.provisioning import (
    FirewallHandle,
    FirewallRuleSpec,
    InstanceHandle,
    InstanceRequest,
    LoadBalancerHandle,
    LoadBalancerServiceSpec,
    NetworkHandle,
    PlacementGroupHandle,
)


class ProvisioningProvider(ABC):
    """Create/delete/list operations for the cloud resources a cluster needs.

    Every method raises ProvisioningError on failure. Create methods for
    networks, firewalls, placement groups and load balancers may return an
    existing resource with the same name.
    """

    @abstractmethod
    async def create_network(self, name: str, ip_range: str) -> NetworkHandle: ...

    @abstractmethod
    async def create_subnet(
        self, network: NetworkHandle, ip_range: str, network_zone: str
    ) -> None: ...

    @abstractmethod
    async def create_firewall(
        self, name: str, rules: List[FirewallRuleSpec]
    ) -> FirewallHandle: ...

    @abstractmethod
    async def create_placement_group(self, name: str) -> PlacementGroupHandle: ...

    @abstractmethod
    async def create_load_balancer(
        self,
        name: str,
        load_balancer_type: str,
        location: str,
        algorithm: str,
        services: List[LoadBalancerServiceSpec],
    ) -> LoadBalancerHandle: ...

    @abstractmethod
    async def attach_load_balancer_to_network(
        self, load_balancer: LoadBalancerHandle, network: NetworkHandle
    ) -> LoadBalancerHandle:
        """Attach to the private network; returns the handle with network_attached set."""

    @abstractmethod
    async def attach_load_balancer_target(
        self, load_balancer: LoadBalancerHandle, instance_id: int
    ) -> None:
        """Register a server as private-IP target. Re-registering is a no-op."""

    @abstractmethod
    async def create_instance(self, request: InstanceRequest) -> InstanceHandle:
        """Create a server and wait until it is running on its private address."""

    @abstractmethod
    async def delete_instance(self, instance_id: int) -> None: ...

    @abstractmethod
    async def list_instances(self, labels: Dict[str, str]) -> List[InstanceHandle]:
        """Servers carrying all the given labels."""
