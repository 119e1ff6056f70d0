"""
nodeforge/deployment/load_balancers.py

Public load balancers in front of the cluster and backend registration.

Only HTTPS is exposed (TCP 443 -> node port 30443) with proxy protocol on, so
the ingress controller sees the real client address instead of the balancer's
private IP.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

from nodeforge.errors import ProvisioningError
from nodeforge.models.nodes import ProvisionedNode
from nodeforge.models.provisioning import (
    LoadBalancerHandle,
    LoadBalancerServiceSpec,
    NetworkHandle,
)
from nodeforge.models.topology import ClusterTopology
from nodeforge.providers.base import ProvisioningProvider

logger = logging.getLogger(__name__)

HTTPS_SERVICE = LoadBalancerServiceSpec(
    protocol="tcp",
    listen_port=443,
    destination_port=30443,
    proxyprotocol=True,
    health_check_interval=10,
    health_check_timeout=3,
    health_check_retries=3,
)


async def create_load_balancers(
    provider: ProvisioningProvider,
    topology: ClusterTopology,
    network: NetworkHandle,
) -> List[LoadBalancerHandle]:
    """Create `load_balancer_count` balancers and attach each to the private network.

    Returns:
        List[LoadBalancerHandle]: Handles in index order, all network-attached.
    """
    balancers: List[LoadBalancerHandle] = []
    for i in range(topology.load_balancer_count):
        lb = await provider.create_load_balancer(
            name=topology.load_balancer_name(i),
            load_balancer_type=topology.load_balancer_type,
            location=topology.location,
            algorithm=topology.load_balancer_algorithm,
            services=[HTTPS_SERVICE],
        )
        lb = await provider.attach_load_balancer_to_network(lb, network)
        balancers.append(lb)
    return balancers


async def attach(
    provider: ProvisioningProvider,
    node: ProvisionedNode,
    load_balancers: Sequence[LoadBalancerHandle],
) -> None:
    """
    Register `node` as a private-IP target on every load balancer.

    Balancers without a network attachment are skipped, since they cannot reach
    private targets. Balancers are handled concurrently; every attempt runs
    before the first failure is raised.

    Raises:
        ProvisioningError: With the node's role and index if any registration failed.
    """
    ready = [lb for lb in load_balancers if lb.network_attached]
    for lb in load_balancers:
        if not lb.network_attached:
            logger.warning(
                "Load balancer %s has no network attachment; skipping %s",
                lb.name,
                node.server_name,
            )

    results = await asyncio.gather(
        *(provider.attach_load_balancer_target(lb, node.server_id) for lb in ready),
        return_exceptions=True,
    )
    failures = [
        (lb, res) for lb, res in zip(ready, results) if isinstance(res, BaseException)
    ]
    for lb, _ in failures:
        logger.error("Could not add %s to load balancer %s", node.server_name, lb.name)
    if failures:
        lb, exc = failures[0]
        if not isinstance(exc, Exception):
            raise exc
        raise ProvisioningError(
            f"Adding {node.server_name} to load balancer {lb.name} failed",
            role=node.role,
            index=node.index,
            cause=exc,
        ) from exc
