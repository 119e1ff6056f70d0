"""
In-memory provider, registry and secret store used across the test suite.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest
from pydantic import SecretStr

from nodeforge.errors import ProvisioningError, RegistryError
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
from nodeforge.models.registry import RegistryDevice
from nodeforge.models.topology import ClusterTopology, Role
from nodeforge.providers.base import ProvisioningProvider
from nodeforge.registry.base import DeviceFilter, DeviceRegistry
from nodeforge.secrets.cluster import StaticSecretStore

SECRETS_PATH = "nodeforge/cluster"

CLUSTER_SECRETS = {
    "k3s_token": "k3s-join-token-value",
    "tailscale_oauth_client_id": "oauth-client-id-value",
    "tailscale_oauth_client_secret": "oauth-client-secret-value",
    "s3_host": "s3.example.test",
    "backup_bucket": "etcd-backups",
    "s3_access_key": "s3-access-value",
    "s3_secret_key": "s3-secret-value",
}


class FakeProvider(ProvisioningProvider):
    """Records every call. Servers named in `fail_on` fail at creation."""

    def __init__(
        self,
        create_delay: float = 0.0,
        fail_on: Iterable[str] = (),
        fail_delete: Iterable[str] = (),
        fail_targets: Iterable[str] = (),
    ) -> None:
        self.create_delay = create_delay
        self.fail_on = set(fail_on)
        self.fail_delete = set(fail_delete)
        self.fail_targets = set(fail_targets)
        self.on_create: Optional[Callable[[InstanceRequest], None]] = None

        self.calls: List[Tuple[str, str]] = []
        self.instances: Dict[int, InstanceHandle] = {}
        self.requests: List[InstanceRequest] = []
        self.windows: Dict[str, Tuple[float, float]] = {}
        self.deleted: List[str] = []
        self.targets: List[Tuple[str, int]] = []
        self._next_id = 100

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_instance(
        self, topology: ClusterTopology, role: Role, index: int
    ) -> InstanceHandle:
        """Pretend a server for this slot already exists."""
        handle = InstanceHandle(
            id=self._new_id(),
            name=topology.server_name(role, index),
            labels=topology.server_labels(role, index),
            private_ip=topology.private_ip(role, index),
            public_ipv4="203.0.113.1",
        )
        self.instances[handle.id] = handle
        return handle

    @property
    def created(self) -> List[str]:
        return [name for call, name in self.calls if call == "create_instance"]

    async def create_network(self, name: str, ip_range: str) -> NetworkHandle:
        self.calls.append(("create_network", name))
        return NetworkHandle(id=1, name=name, ip_range=ip_range)

    async def create_subnet(
        self, network: NetworkHandle, ip_range: str, network_zone: str
    ) -> None:
        self.calls.append(("create_subnet", ip_range))

    async def create_firewall(
        self, name: str, rules: List[FirewallRuleSpec]
    ) -> FirewallHandle:
        self.calls.append(("create_firewall", name))
        return FirewallHandle(id=2, name=name)

    async def create_placement_group(self, name: str) -> PlacementGroupHandle:
        self.calls.append(("create_placement_group", name))
        return PlacementGroupHandle(id=self._new_id(), name=name)

    async def create_load_balancer(
        self,
        name: str,
        load_balancer_type: str,
        location: str,
        algorithm: str,
        services: List[LoadBalancerServiceSpec],
    ) -> LoadBalancerHandle:
        self.calls.append(("create_load_balancer", name))
        return LoadBalancerHandle(id=self._new_id(), name=name)

    async def attach_load_balancer_to_network(
        self, load_balancer: LoadBalancerHandle, network: NetworkHandle
    ) -> LoadBalancerHandle:
        self.calls.append(("attach_load_balancer_to_network", load_balancer.name))
        return load_balancer.model_copy(update={"network_attached": True})

    async def attach_load_balancer_target(
        self, load_balancer: LoadBalancerHandle, instance_id: int
    ) -> None:
        self.calls.append(("attach_load_balancer_target", load_balancer.name))
        name = self.instances[instance_id].name
        if name in self.fail_targets:
            raise ProvisioningError(f"cannot target {name}")
        self.targets.append((load_balancer.name, instance_id))

    async def create_instance(self, request: InstanceRequest) -> InstanceHandle:
        self.calls.append(("create_instance", request.name))
        loop = asyncio.get_running_loop()
        started = loop.time()
        if self.on_create is not None:
            self.on_create(request)
        await asyncio.sleep(self.create_delay)
        if request.name in self.fail_on:
            raise ProvisioningError(f"server {request.name} failed to start")
        handle = InstanceHandle(
            id=self._new_id(),
            name=request.name,
            labels=dict(request.labels),
            private_ip=request.private_ip,
            public_ipv4="203.0.113.10",
        )
        self.instances[handle.id] = handle
        self.requests.append(request)
        self.windows[request.name] = (started, loop.time())
        return handle

    async def delete_instance(self, instance_id: int) -> None:
        name = self.instances[instance_id].name
        self.calls.append(("delete_instance", name))
        if name in self.fail_delete:
            raise ProvisioningError(f"cannot delete {name}")
        del self.instances[instance_id]
        self.deleted.append(name)

    async def list_instances(self, labels: Dict[str, str]) -> List[InstanceHandle]:
        self.calls.append(("list_instances", ",".join(sorted(labels))))
        return [
            inst
            for inst in self.instances.values()
            if all(inst.labels.get(k) == v for k, v in labels.items())
        ]


class FakeRegistry(DeviceRegistry):
    def __init__(
        self,
        devices: Iterable[RegistryDevice] = (),
        fail_delete: Iterable[str] = (),
        fail_list: bool = False,
    ) -> None:
        self.devices: Dict[str, RegistryDevice] = {d.id: d for d in devices}
        self.fail_delete = set(fail_delete)
        self.fail_list = fail_list
        self.deleted_ids: List[str] = []
        self.keys: List[Tuple[str, List[str], int]] = []

    def add(self, device_id: str, hostname: str, *tags: str) -> RegistryDevice:
        device = RegistryDevice(id=device_id, hostname=hostname, tags=frozenset(tags))
        self.devices[device_id] = device
        return device

    async def list_devices(
        self, tag_filter: Optional[DeviceFilter] = None
    ) -> List[RegistryDevice]:
        if self.fail_list:
            raise RegistryError("registry unavailable")
        devices = list(self.devices.values())
        if tag_filter is not None:
            devices = [d for d in devices if tag_filter(d)]
        return devices

    async def delete_device(self, device_id: str) -> None:
        if device_id in self.fail_delete:
            raise RegistryError("delete refused", device_id=device_id)
        self.devices.pop(device_id, None)
        self.deleted_ids.append(device_id)

    async def create_registration_key(
        self,
        description: str,
        tags: Iterable[str],
        expiry_seconds: int = 1800,
    ) -> SecretStr:
        self.keys.append((description, sorted(tags), expiry_seconds))
        return SecretStr(f"tskey-auth-{len(self.keys)}")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def secret_store() -> StaticSecretStore:
    return StaticSecretStore({SECRETS_PATH: dict(CLUSTER_SECRETS)})
