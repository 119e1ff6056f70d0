"""
nodeforge/models/provisioning.py

Provider-neutral request and handle models exchanged with a
ProvisioningProvider. Handles carry only ids and names; the provider resolves
them back to SDK objects.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class NetworkHandle(BaseModel):
    id: int
    name: str
    ip_range: str


class FirewallRuleSpec(BaseModel):
    """One inbound/outbound firewall rule."""

    direction: str = "in"
    protocol: str
    port: Optional[str] = None
    source_ips: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class FirewallHandle(BaseModel):
    id: int
    name: str


class PlacementGroupHandle(BaseModel):
    id: int
    name: str


class LoadBalancerServiceSpec(BaseModel):
    """A TCP listener with a TCP health check on the destination port."""

    protocol: str = "tcp"
    listen_port: int = 443
    destination_port: int = 30443
    proxyprotocol: bool = True
    health_check_interval: int = 10
    health_check_timeout: int = 3
    health_check_retries: int = 3


class LoadBalancerHandle(BaseModel):
    """A load balancer and whether it is attached to the private network."""

    id: int
    name: str
    public_ipv4: Optional[str] = None
    network_attached: bool = False


class InstanceRequest(BaseModel):
    """Everything needed to create one server.

    `user_data` holds rendered secrets; the field is excluded from repr.
    """

    name: str
    server_type: str
    image: str
    location: str
    network_id: int
    private_ip: str
    firewall_ids: List[int] = Field(default_factory=list)
    placement_group_id: Optional[int] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    user_data: str = Field(default="", repr=False)
    protected: bool = False


class ClusterInfrastructure(BaseModel):
    """Shared resources every server of a stage is created against.

    Attributes:
        network: Private network.
        firewall: Inbound firewall attached to every server.
        placement_groups: role value => spread groups, 10 servers each.
        load_balancers: Public load balancers, in index order.
    """

    network: NetworkHandle
    firewall: FirewallHandle
    placement_groups: Dict[str, List[PlacementGroupHandle]] = Field(default_factory=dict)
    load_balancers: List[LoadBalancerHandle] = Field(default_factory=list)


class InstanceHandle(BaseModel):
    id: int
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    private_ip: Optional[str] = None
    public_ipv4: Optional[str] = None
