"""
nodeforge/providers/hetzner.py

ProvisioningProvider for Hetzner Cloud on top of the blocking hcloud SDK.
Every SDK call runs in the default executor and waits for the actions it
starts; SDK and transport exceptions surface as ProvisioningError.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests
from hcloud import APIException, Client, HCloudException
from hcloud.actions import BoundAction
from hcloud.firewalls import Firewall, FirewallRule
from hcloud.images import Image
from hcloud.load_balancer_types import LoadBalancerType
from hcloud.load_balancers import (
    LoadBalancer,
    LoadBalancerAlgorithm,
    LoadBalancerHealthCheck,
    LoadBalancerService,
    LoadBalancerTarget,
)
from hcloud.locations import Location
from hcloud.networks import Network, NetworkSubnet
from hcloud.placement_groups import PlacementGroup
from hcloud.server_types import ServerType
from hcloud.servers import Server, ServerCreatePublicNetwork

from nodeforge.errors import ProvisioningError
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
from nodeforge.providers.base import ProvisioningProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

APPLICATION_NAME = "nodeforge"


def _wait(*actions: Optional[BoundAction]) -> None:
    for action in actions:
        if action is not None:
            action.wait_until_finished()


def _instance_handle(server: Any) -> InstanceHandle:
    private_ip = server.private_net[0].ip if server.private_net else None
    public_ipv4 = (
        server.public_net.ipv4.ip
        if server.public_net is not None and server.public_net.ipv4 is not None
        else None
    )
    return InstanceHandle(
        id=server.id,
        name=server.name,
        labels=dict(server.labels or {}),
        private_ip=private_ip,
        public_ipv4=public_ipv4,
    )


def _load_balancer_handle(lb: Any, network_id: Optional[int] = None) -> LoadBalancerHandle:
    attached = bool(lb.private_net) and (
        network_id is None or any(pn.network.id == network_id for pn in lb.private_net)
    )
    ipv4 = lb.public_net.ipv4.ip if lb.public_net and lb.public_net.ipv4 else None
    return LoadBalancerHandle(
        id=lb.id, name=lb.name, public_ipv4=ipv4, network_attached=attached
    )


class HetznerProvider(ProvisioningProvider):
    """ProvisioningProvider over the blocking hcloud SDK.

    Each operation runs as one blocking function in the default executor and
    waits for the Hetzner actions it triggered, so a returned coroutine means
    the resource is in place.
    """

    def __init__(self, api_token: str, poll_interval: float = 1.0):
        self._client = Client(
            token=api_token,
            application_name=APPLICATION_NAME,
            poll_interval=poll_interval,
        )

    async def _run(self, what: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        except (HCloudException, requests.exceptions.RequestException) as exc:
            raise ProvisioningError(f"Hetzner call failed: {what}", cause=exc) from exc

    # ------------------------------
    # Network
    # ------------------------------
    def _create_network(self, name: str, ip_range: str) -> NetworkHandle:
        network = self._client.networks.get_by_name(name)
        if network is None:
            network = self._client.networks.create(name=name, ip_range=ip_range)
            logger.info("Created network %s (id=%s)", name, network.id)
        return NetworkHandle(id=network.id, name=network.name, ip_range=network.ip_range)

    async def create_network(self, name: str, ip_range: str) -> NetworkHandle:
        return await self._run(f"create network {name}", self._create_network, name, ip_range)

    def _create_subnet(self, network_id: int, ip_range: str, network_zone: str) -> None:
        network = self._client.networks.get_by_id(network_id)
        if any(subnet.ip_range == ip_range for subnet in network.subnets or []):
            return
        action = self._client.networks.add_subnet(
            network,
            NetworkSubnet(ip_range=ip_range, type="cloud", network_zone=network_zone),
        )
        _wait(action)
        logger.info("Added subnet %s to network %s", ip_range, network.name)

    async def create_subnet(
        self, network: NetworkHandle, ip_range: str, network_zone: str
    ) -> None:
        await self._run(
            f"create subnet {ip_range}",
            self._create_subnet,
            network.id,
            ip_range,
            network_zone,
        )

    # ------------------------------
    # Firewall / placement
    # ------------------------------
    def _create_firewall(self, name: str, rules: List[FirewallRuleSpec]) -> FirewallHandle:
        firewall = self._client.firewalls.get_by_name(name)
        if firewall is None:
            response = self._client.firewalls.create(
                name=name,
                rules=[
                    FirewallRule(
                        direction=r.direction,
                        protocol=r.protocol,
                        source_ips=r.source_ips,
                        port=r.port,
                        description=r.description,
                    )
                    for r in rules
                ],
            )
            _wait(*(response.actions or []))
            firewall = response.firewall
            logger.info("Created firewall %s (id=%s)", name, firewall.id)
        return FirewallHandle(id=firewall.id, name=firewall.name)

    async def create_firewall(
        self, name: str, rules: List[FirewallRuleSpec]
    ) -> FirewallHandle:
        return await self._run(f"create firewall {name}", self._create_firewall, name, rules)

    def _create_placement_group(self, name: str) -> PlacementGroupHandle:
        group = self._client.placement_groups.get_by_name(name)
        if group is None:
            response = self._client.placement_groups.create(name=name, type="spread")
            _wait(response.action)
            group = response.placement_group
            logger.info("Created placement group %s (id=%s)", name, group.id)
        return PlacementGroupHandle(id=group.id, name=group.name)

    async def create_placement_group(self, name: str) -> PlacementGroupHandle:
        return await self._run(
            f"create placement group {name}", self._create_placement_group, name
        )

    # ------------------------------
    # Load balancers
    # ------------------------------
    def _create_load_balancer(
        self,
        name: str,
        load_balancer_type: str,
        location: str,
        algorithm: str,
        services: List[LoadBalancerServiceSpec],
    ) -> LoadBalancerHandle:
        lb = self._client.load_balancers.get_by_name(name)
        if lb is None:
            response = self._client.load_balancers.create(
                name=name,
                load_balancer_type=LoadBalancerType(name=load_balancer_type),
                location=Location(name=location),
                algorithm=LoadBalancerAlgorithm(type=algorithm),
                services=[
                    LoadBalancerService(
                        protocol=s.protocol,
                        listen_port=s.listen_port,
                        destination_port=s.destination_port,
                        proxyprotocol=s.proxyprotocol,
                        health_check=LoadBalancerHealthCheck(
                            protocol="tcp",
                            port=s.destination_port,
                            interval=s.health_check_interval,
                            timeout=s.health_check_timeout,
                            retries=s.health_check_retries,
                        ),
                    )
                    for s in services
                ],
            )
            _wait(response.action)
            lb = self._client.load_balancers.get_by_id(response.load_balancer.id)
            logger.info("Created load balancer %s (id=%s)", name, lb.id)
        return _load_balancer_handle(lb)

    async def create_load_balancer(
        self,
        name: str,
        load_balancer_type: str,
        location: str,
        algorithm: str,
        services: List[LoadBalancerServiceSpec],
    ) -> LoadBalancerHandle:
        return await self._run(
            f"create load balancer {name}",
            self._create_load_balancer,
            name,
            load_balancer_type,
            location,
            algorithm,
            services,
        )

    def _attach_load_balancer_to_network(
        self, load_balancer_id: int, network_id: int
    ) -> LoadBalancerHandle:
        lb = self._client.load_balancers.get_by_id(load_balancer_id)
        if not _load_balancer_handle(lb, network_id).network_attached:
            _wait(
                self._client.load_balancers.attach_to_network(lb, Network(id=network_id))
            )
            lb = self._client.load_balancers.get_by_id(load_balancer_id)
        return _load_balancer_handle(lb, network_id)

    async def attach_load_balancer_to_network(
        self, load_balancer: LoadBalancerHandle, network: NetworkHandle
    ) -> LoadBalancerHandle:
        return await self._run(
            f"attach load balancer {load_balancer.name} to {network.name}",
            self._attach_load_balancer_to_network,
            load_balancer.id,
            network.id,
        )

    def _attach_load_balancer_target(self, load_balancer_id: int, instance_id: int) -> None:
        target = LoadBalancerTarget(
            type="server", server=Server(id=instance_id), use_private_ip=True
        )
        try:
            _wait(
                self._client.load_balancers.add_target(
                    LoadBalancer(id=load_balancer_id), target
                )
            )
        except APIException as exc:
            if exc.code != "target_already_defined":
                raise
            logger.debug(
                "Server %s already targeted by load balancer %s",
                instance_id,
                load_balancer_id,
            )

    async def attach_load_balancer_target(
        self, load_balancer: LoadBalancerHandle, instance_id: int
    ) -> None:
        await self._run(
            f"add server {instance_id} to load balancer {load_balancer.name}",
            self._attach_load_balancer_target,
            load_balancer.id,
            instance_id,
        )

    # ------------------------------
    # Servers
    # ------------------------------
    def _create_instance(self, request: InstanceRequest) -> InstanceHandle:
        response = self._client.servers.create(
            name=request.name,
            server_type=ServerType(name=request.server_type),
            image=Image(name=request.image),
            location=Location(name=request.location),
            user_data=request.user_data or None,
            firewalls=[Firewall(id=fid) for fid in request.firewall_ids],
            placement_group=(
                PlacementGroup(id=request.placement_group_id)
                if request.placement_group_id is not None
                else None
            ),
            labels=request.labels,
            public_net=ServerCreatePublicNetwork(enable_ipv4=True, enable_ipv6=True),
        )
        _wait(response.action, *(response.next_actions or []))
        server = response.server
        logger.info("Created server %s (id=%s)", request.name, server.id)

        _wait(
            self._client.servers.attach_to_network(
                server, Network(id=request.network_id), ip=request.private_ip
            )
        )
        if request.protected:
            _wait(self._client.servers.change_protection(server, delete=True, rebuild=True))
        return _instance_handle(self._client.servers.get_by_id(server.id))

    async def create_instance(self, request: InstanceRequest) -> InstanceHandle:
        return await self._run(
            f"create server {request.name}", self._create_instance, request
        )

    def _delete_instance(self, instance_id: int) -> None:
        server = self._client.servers.get_by_id(instance_id)
        if server.status == Server.STATUS_RUNNING:
            _wait(self._client.servers.shutdown(server))
        _wait(self._client.servers.delete(server))
        logger.info("Deleted server %s (id=%s)", server.name, instance_id)

    async def delete_instance(self, instance_id: int) -> None:
        await self._run(f"delete server {instance_id}", self._delete_instance, instance_id)

    def _list_instances(self, labels: Dict[str, str]) -> List[InstanceHandle]:
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        servers = self._client.servers.get_all(label_selector=selector or None)
        return [_instance_handle(s) for s in servers]

    async def list_instances(self, labels: Dict[str, str]) -> List[InstanceHandle]:
        return await self._run("list servers", self._list_instances, labels)
