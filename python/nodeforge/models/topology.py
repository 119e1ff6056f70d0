"""
nodeforge/models/topology.py

Defines Pydantic models describing the desired cluster layout:
 - Role
 - NetworkConfig
 - NodeSpec
 - ClusterTopology

A topology is plain configuration. Everything derived from it (node slots,
addresses, hostnames) is recomputed on every run and never persisted.
"""

from __future__ import annotations

import ipaddress
import math
import re
from enum import Enum
from typing import Dict, List, Literal, Set

from pydantic import BaseModel, Field, field_validator, model_validator

from nodeforge.errors import ConfigError
from nodeforge.utils.addressing import allocate, validate_address_ranges

MAX_CONTROL_PLANE_NODES = 10
PLACEMENT_GROUP_SIZE = 10
API_SERVER_PORT = 6443

_STAGE_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


class Role(str, Enum):
    """Node role. Determines address block, tags and sequencing group."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @property
    def resource_name(self) -> str:
        """CamelCase name used in provider resource labels."""
        return "ControlPlane" if self is Role.CONTROL_PLANE else "Worker"

    @property
    def display_name(self) -> str:
        return "control plane" if self is Role.CONTROL_PLANE else "worker"

    @property
    def tag(self) -> str:
        """Registry tag carried by devices of this role."""
        return f"tag:{self.value}"

    def node_role(self, index: int) -> str:
        """Bootstrap role string handed to cloud-init: bootstrap, server or worker."""
        if self is Role.WORKER:
            return "worker"
        return "bootstrap" if index == 0 else "server"


class NetworkConfig(BaseModel):
    """Private network layout.

    Attributes:
        network_cidr: Range of the whole private network.
        subnet_cidr: Subnet the servers are attached to.
        network_zone: Hetzner network zone of the subnet.
        role_start_offset: First host octet of each role's address block.
    """

    network_cidr: str = "10.0.0.0/8"
    subnet_cidr: str = "10.0.1.0/24"
    network_zone: str = "eu-central"
    role_start_offset: Dict[Role, int] = Field(
        default_factory=lambda: {Role.CONTROL_PLANE: 10, Role.WORKER: 20}
    )

    @field_validator("network_cidr", "subnet_cidr")
    @classmethod
    def validate_cidr(cls, value: str) -> str:
        """Check that the value parses as an IPv4 network."""
        net = ipaddress.ip_network(value, strict=False)
        if net.version != 4:
            raise ValueError(f"Only IPv4 networks are supported: '{value}'")
        return value

    @model_validator(mode="after")
    def check_subnet_inside_network(self) -> NetworkConfig:
        """Ensure the subnet is contained in the network and every role has an offset."""
        network = ipaddress.ip_network(self.network_cidr, strict=False)
        subnet = ipaddress.ip_network(self.subnet_cidr, strict=False)
        if not subnet.subnet_of(network):  # type: ignore[arg-type]
            raise ValueError(
                f"Subnet {self.subnet_cidr} is not inside network {self.network_cidr}."
            )
        missing = [r.value for r in Role if r not in self.role_start_offset]
        if missing:
            raise ValueError(f"Missing start offset for roles: {missing}")
        return self

    @property
    def gateway(self) -> str:
        """First host of the network range; Hetzner routes private traffic through it."""
        return str(ipaddress.ip_network(self.network_cidr, strict=False).network_address + 1)


class NodeSpec(BaseModel):
    """One slot of the topology: the `index`-th node of `role`."""

    role: Role
    index: int = Field(ge=0)
    desired_count: int = Field(ge=0)

    @property
    def is_bootstrap(self) -> bool:
        return self.role is Role.CONTROL_PLANE and self.index == 0


class ClusterTopology(BaseModel):
    """Desired cluster shape for one stage.

    Attributes:
        stage: Stage name, used as prefix for every resource and hostname.
        production: Enables delete/rebuild protection on servers.
        control_plane_count: Number of control-plane nodes (0..10).
        worker_count: Number of worker nodes.
        server_type: Hetzner server type (servers can only be upsized).
        image: OS image name.
        location: Hetzner location for servers and load balancers.
        network: Private network layout.
        load_balancer_count: Number of public load balancers.
        load_balancer_type: Hetzner load balancer type.
        load_balancer_algorithm: round_robin or least_connections.
    """

    stage: str
    production: bool = False
    control_plane_count: int = 1
    worker_count: int = 0
    server_type: str = "cx23"
    image: str = "ubuntu-24.04"
    location: str = "fsn1"
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    load_balancer_count: int = 0
    load_balancer_type: str = "lb11"
    load_balancer_algorithm: Literal["round_robin", "least_connections"] = (
        "least_connections"
    )

    @field_validator("stage")
    @classmethod
    def validate_stage(cls, value: str) -> str:
        """Stage names end up in hostnames: lowercase letters, digits and dashes only."""
        if not _STAGE_RE.match(value):
            raise ValueError(
                f"Stage '{value}' must be lowercase alphanumeric with dashes."
            )
        return value

    @model_validator(mode="after")
    def check_topology(self) -> ClusterTopology:
        validate_topology(self)
        return self

    @classmethod
    def for_stage(cls, stage: str, production: bool = False) -> ClusterTopology:
        """Preset topology for a stage: small dev cluster or production cluster."""
        if production:
            return cls(
                stage=stage,
                production=True,
                server_type="ccx13",
                location="hil",
                network=NetworkConfig(network_zone="us-west"),
                load_balancer_count=1,
            )
        return cls(stage=stage)

    # ------------------------------
    # Derived values
    # ------------------------------
    def count_for(self, role: Role) -> int:
        return (
            self.control_plane_count
            if role is Role.CONTROL_PLANE
            else self.worker_count
        )

    def node_specs(self, role: Role) -> List[NodeSpec]:
        """All slots for a role, index 0..count-1."""
        count = self.count_for(role)
        return [NodeSpec(role=role, index=i, desired_count=count) for i in range(count)]

    def private_ip(self, role: Role, index: int) -> str:
        return allocate(
            self.network.subnet_cidr, self.network.role_start_offset[role], index
        )

    def server_name(self, role: Role, index: int) -> str:
        return f"{self.stage}-{role.value}-server-{index}"

    def tailnet_hostname(self, role: Role, index: int) -> str:
        return f"{self.stage}-hetzner-{role.value}-server-{index}"

    @property
    def cluster_tailnet_hostname(self) -> str:
        """Hostname the in-cluster Tailscale operator registers the API under."""
        return f"{self.stage}-cluster"

    @property
    def network_name(self) -> str:
        return f"k3s-private-{self.stage}-network"

    def load_balancer_name(self, index: int) -> str:
        return f"k3s-public-{self.stage}-load-balancer-{index}"

    def placement_group_names(self, role: Role) -> List[str]:
        """Spread placement groups for a role; each holds at most 10 servers."""
        if role is Role.CONTROL_PLANE:
            groups = 1 if self.control_plane_count else 0
            return [f"{self.stage}-control-plane"] * groups
        groups = math.ceil(self.worker_count / PLACEMENT_GROUP_SIZE)
        return [f"{self.stage}-workers-{i}" for i in range(groups)]

    @property
    def firewall_name(self) -> str:
        return f"k3s-{self.stage}-inbound"

    def server_labels(self, role: Role, index: int) -> Dict[str, str]:
        """Labels identifying the server's slot; used to adopt and scale down."""
        return {
            **self.managed_labels(),
            "role": role.value,
            "node-kind": role.resource_name,
            "index": str(index),
            "tailscale": self.tailnet_hostname(role, index),
        }

    def managed_labels(self) -> Dict[str, str]:
        return {"managed-by": "nodeforge", "stage": self.stage}

    def registry_tags(self) -> Set[str]:
        """Tags every registry device of this stage carries."""
        return {"tag:hetzner", f"tag:{self.stage}"}

    def expected_hostnames(self) -> Set[str]:
        return {
            self.tailnet_hostname(spec.role, spec.index)
            for role in Role
            for spec in self.node_specs(role)
        }


def validate_topology(topology: ClusterTopology) -> None:
    """Static checks run once at load time, before any provider call.

    Raises:
        ConfigError: On invalid counts or colliding address blocks.
    """
    if topology.control_plane_count < 0 or topology.worker_count < 0:
        raise ConfigError("Node counts must be >= 0.")
    if topology.control_plane_count > MAX_CONTROL_PLANE_NODES:
        raise ConfigError(
            f"You can only have {MAX_CONTROL_PLANE_NODES} control plane nodes. "
            f"Currently: {topology.control_plane_count}"
        )
    if topology.worker_count > 0 and topology.control_plane_count == 0:
        raise ConfigError(
            "Workers need a bootstrap control-plane node; set control_plane_count >= 1."
        )
    if topology.load_balancer_count < 0:
        raise ConfigError("load_balancer_count must be >= 0.")

    offsets = topology.network.role_start_offset
    validate_address_ranges(
        {
            Role.CONTROL_PLANE.value: (
                offsets[Role.CONTROL_PLANE],
                MAX_CONTROL_PLANE_NODES,
            ),
            Role.WORKER.value: (offsets[Role.WORKER], topology.worker_count),
        }
    )
