"""
nodeforge/deployment/cluster.py

One reconciliation pass of a k3s cluster on Hetzner Cloud.

Usage example:
  1) Validate the topology (nothing is created on an invalid one)
  2) Ensure network, subnet, firewall, placement groups and load balancers
  3) Create (or adopt) the bootstrap control-plane node
  4) Create the remaining control-plane nodes and the workers, one role
     sequence each, both sequences running concurrently
  5) Register every ready node with the load balancers
  6) Delete servers whose index is beyond the desired count
  7) Remove orphaned devices from the tailnet

Servers that already exist for a slot are adopted as ready, so running the
pass again is safe. Creation calls are never retried by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from nodeforge.deployment.load_balancers import attach, create_load_balancers
from nodeforge.deployment.reconcile import reconcile_registry
from nodeforge.deployment.sequencer import SequenceState, run_role_sequence
from nodeforge.errors import ProvisioningError, RegistryError
from nodeforge.models.nodes import (
    TEMPLATE_PLACEHOLDERS,
    BootstrapContext,
    ProvisionedNode,
)
from nodeforge.models.provisioning import (
    ClusterInfrastructure,
    FirewallRuleSpec,
    InstanceHandle,
    InstanceRequest,
)
from nodeforge.models.registry import ReconcileReport, TagFilter
from nodeforge.models.reports import DeployReport, RoleRollout
from nodeforge.models.topology import (
    PLACEMENT_GROUP_SIZE,
    ClusterTopology,
    NodeSpec,
    Role,
    validate_topology,
)
from nodeforge.providers.base import ProvisioningProvider
from nodeforge.registry.base import DeviceRegistry
from nodeforge.secrets.cluster import SecretStore, load_cluster_secrets
from nodeforge.utils.template import load_template, missing_placeholders, render

logger = logging.getLogger(__name__)

REGISTRATION_KEY_EXPIRY_SECONDS = 1800

INBOUND_RULES = [
    FirewallRuleSpec(
        direction="in",
        protocol="udp",
        port="41641",
        source_ips=["0.0.0.0/0", "::/0"],
        description="tailscale",
    )
]


async def ensure_infrastructure(
    provider: ProvisioningProvider, topology: ClusterTopology
) -> ClusterInfrastructure:
    """Create (or find) the resources servers depend on, in dependency order."""
    network = await provider.create_network(
        topology.network_name, topology.network.network_cidr
    )
    await provider.create_subnet(
        network, topology.network.subnet_cidr, topology.network.network_zone
    )
    firewall = await provider.create_firewall(topology.firewall_name, INBOUND_RULES)
    placement_groups = {
        role.value: [
            await provider.create_placement_group(name)
            for name in topology.placement_group_names(role)
        ]
        for role in Role
    }
    load_balancers = await create_load_balancers(provider, topology, network)
    return ClusterInfrastructure(
        network=network,
        firewall=firewall,
        placement_groups=placement_groups,
        load_balancers=load_balancers,
    )


def plan_nodes(topology: ClusterTopology) -> List[Dict[str, str]]:
    """Describe every slot of the topology without calling any provider."""
    validate_topology(topology)
    return [
        {
            "role": spec.role.value,
            "index": str(spec.index),
            "bootstrap_role": spec.role.node_role(spec.index),
            "server_name": topology.server_name(spec.role, spec.index),
            "private_ip": topology.private_ip(spec.role, spec.index),
            "tailnet_hostname": topology.tailnet_hostname(spec.role, spec.index),
        }
        for role in Role
        for spec in topology.node_specs(role)
    ]


def _slot_of(instance: InstanceHandle) -> Optional[Tuple[Role, int]]:
    try:
        return Role(instance.labels["role"]), int(instance.labels["index"])
    except (KeyError, ValueError):
        return None


def _merge(first: RoleRollout, second: RoleRollout) -> RoleRollout:
    return RoleRollout(
        role=first.role,
        states={**first.states, **second.states},
        nodes=first.nodes + second.nodes,
        error=first.error or second.error,
        stopped=first.stopped or second.stopped,
    )


async def deploy_cluster(
    topology: ClusterTopology,
    provider: ProvisioningProvider,
    registry: DeviceRegistry,
    secret_store: SecretStore,
    secrets_path: str,
    template: Optional[str] = None,
    stop_event: Optional[asyncio.Event] = None,
    ensure_infra: bool = True,
) -> DeployReport:
    """
    Bring the cluster in line with `topology`.

    Args:
        topology: Desired layout.
        provider: Provisioning provider (Hetzner in production).
        registry: Device registry (Tailscale in production).
        secret_store: Read-only secret lookup, queried once per created node.
        secrets_path: Path of the ClusterSecrets bundle in the secret store.
        template: Bootstrap template text; the packaged cloud-config if None.
        stop_event: Once set, no new node creation or cleanup step starts.
        ensure_infra: Create network/firewall/load balancers first. Teardown
            passes False, since it only removes servers.

    Returns:
        DeployReport: per-role rollouts, deleted servers, errors and the
        registry reconciliation outcome.

    Raises:
        ConfigError: Invalid topology; raised before any provider call.
        ProvisioningError: Shared infrastructure or the bootstrap node failed.
    """
    validate_topology(topology)
    report = DeployReport(stage=topology.stage)

    if template is None:
        template = await load_template()
    unfilled = missing_placeholders(template, dict.fromkeys(TEMPLATE_PLACEHOLDERS, ""))
    if unfilled:
        logger.warning(
            "Template placeholders with no value will render empty: %s", unfilled
        )

    infra: Optional[ClusterInfrastructure] = None
    if ensure_infra:
        infra = await ensure_infrastructure(provider, topology)

    existing = await provider.list_instances(topology.managed_labels())
    existing_by_name = {inst.name: inst for inst in existing}

    async def _create_node(spec: NodeSpec, state: SequenceState) -> ProvisionedNode:
        role, index = spec.role, spec.index
        name = topology.server_name(role, index)
        private_ip = topology.private_ip(role, index)
        hostname = topology.tailnet_hostname(role, index)

        found = existing_by_name.get(name)
        if found is not None:
            logger.info("Adopting existing server %s (id=%s)", name, found.id)
            return ProvisionedNode(
                role=role,
                index=index,
                private_ip=private_ip,
                server_id=found.id,
                server_name=name,
                public_ipv4=found.public_ipv4,
                tailnet_hostname=hostname,
                is_bootstrap=spec.is_bootstrap,
                adopted=True,
            )
        if infra is None:
            raise ProvisioningError(
                f"Cannot create {name} without infrastructure", role=role, index=index
            )

        bootstrap_address = private_ip if spec.is_bootstrap else state.bootstrap_address
        try:
            secrets = await load_cluster_secrets(secret_store, secrets_path)
            registration_key = await registry.create_registration_key(
                description=f"hcloud {role.value} {index} node reg",
                tags=sorted(topology.registry_tags() | {role.tag}),
                expiry_seconds=REGISTRATION_KEY_EXPIRY_SECONDS,
            )
        except (RuntimeError, RegistryError) as exc:
            raise ProvisioningError(
                f"Could not prepare bootstrap data for {name}",
                role=role,
                index=index,
                cause=exc,
            ) from exc

        context = BootstrapContext(
            stage=topology.stage,
            private_ip_range=topology.network.subnet_cidr,
            network_gateway=topology.network.gateway,
            cluster_join_token=secrets.k3s_token,
            bootstrap_address=bootstrap_address or "",
            node_ip=private_ip,
            role=role.node_role(index),
            hostname=hostname,
            tailnet_registration_key=registration_key,
            tailscale_oauth_client_id=secrets.tailscale_oauth_client_id,
            tailscale_oauth_client_secret=secrets.tailscale_oauth_client_secret,
            cluster_tailnet_hostname=topology.cluster_tailnet_hostname,
            s3_host=secrets.s3_host,
            backup_bucket=secrets.backup_bucket,
            s3_access_key=secrets.s3_access_key,
            s3_secret_key=secrets.s3_secret_key,
        )
        groups = infra.placement_groups.get(role.value, [])
        group_id = groups[index // PLACEMENT_GROUP_SIZE].id if groups else None
        request = InstanceRequest(
            name=name,
            server_type=topology.server_type,
            image=topology.image,
            location=topology.location,
            network_id=infra.network.id,
            private_ip=private_ip,
            firewall_ids=[infra.firewall.id],
            placement_group_id=group_id,
            labels=topology.server_labels(role, index),
            user_data=render(template, context.template_values()),
            protected=topology.production,
        )
        logger.info(
            "Creating %s %d as %s at %s",
            role.display_name,
            index,
            name,
            private_ip,
        )
        try:
            handle = await provider.create_instance(request)
        except ProvisioningError as exc:
            exc.role, exc.index = role, index
            raise
        except OSError as exc:
            raise ProvisioningError(
                f"Creating {name} failed", role=role, index=index, cause=exc
            ) from exc
        return ProvisionedNode(
            role=role,
            index=index,
            private_ip=private_ip,
            server_id=handle.id,
            server_name=name,
            public_ipv4=handle.public_ipv4,
            tailnet_hostname=hostname,
            is_bootstrap=spec.is_bootstrap,
        )

    # Bootstrap first; nothing else may start without it
    cp_specs = topology.node_specs(Role.CONTROL_PLANE)
    worker_specs = topology.node_specs(Role.WORKER)
    state = SequenceState()
    if cp_specs:
        bootstrap_rollout, state = await run_role_sequence(
            Role.CONTROL_PLANE, cp_specs[:1], _create_node, state, stop_event
        )
        if bootstrap_rollout.error is not None:
            raise bootstrap_rollout.error
        if bootstrap_rollout.stopped:
            report.rollouts.append(bootstrap_rollout)
            return report

        (cp_rollout, _), (worker_rollout, _) = await asyncio.gather(
            run_role_sequence(
                Role.CONTROL_PLANE, cp_specs[1:], _create_node, state, stop_event
            ),
            run_role_sequence(Role.WORKER, worker_specs, _create_node, state, stop_event),
        )
        report.rollouts = [_merge(bootstrap_rollout, cp_rollout), worker_rollout]
        report.errors.extend(
            r.error for r in report.rollouts if r.error is not None
        )

    if infra is not None and infra.load_balancers:
        results = await asyncio.gather(
            *(attach(provider, node, infra.load_balancers) for node in report.nodes),
            return_exceptions=True,
        )
        for res in results:
            if isinstance(res, ProvisioningError):
                report.errors.append(res)
            elif isinstance(res, BaseException):
                raise res

    if stop_event is not None and stop_event.is_set():
        logger.info("Stop requested; skipping scale-down and registry cleanup")
        return report

    deleted, delete_errors = await _delete_surplus(provider, topology, existing)
    report.deleted_servers = deleted
    report.errors.extend(delete_errors)

    try:
        report.registry = await reconcile_registry(
            registry,
            topology.expected_hostnames(),
            TagFilter(required_tags=frozenset(topology.registry_tags())),
        )
    except RegistryError as exc:
        logger.error("Registry reconciliation skipped: %s", exc)
        report.registry = ReconcileReport(error=str(exc))

    return report


async def destroy_cluster(
    topology: ClusterTopology,
    provider: ProvisioningProvider,
    registry: DeviceRegistry,
    secret_store: SecretStore,
    secrets_path: str,
    stop_event: Optional[asyncio.Event] = None,
) -> DeployReport:
    """Scale every role of the stage to zero and clean up the registry.

    Network, firewall and load balancers are left in place.
    """
    empty = topology.model_copy(update={"control_plane_count": 0, "worker_count": 0})
    return await deploy_cluster(
        empty,
        provider,
        registry,
        secret_store,
        secrets_path,
        template="",
        stop_event=stop_event,
        ensure_infra=False,
    )


async def _delete_surplus(
    provider: ProvisioningProvider,
    topology: ClusterTopology,
    existing: List[InstanceHandle],
) -> Tuple[List[str], List[ProvisioningError]]:
    """
    Delete servers whose slot index is at or beyond the role's desired count.
    Highest index goes first; the bootstrap node is deleted last.
    """
    surplus: Dict[Role, List[Tuple[int, InstanceHandle]]] = {role: [] for role in Role}
    for inst in existing:
        slot = _slot_of(inst)
        if slot is None:
            logger.warning("Server %s has no slot labels; leaving it alone", inst.name)
            continue
        role, index = slot
        if index >= topology.count_for(role):
            surplus[role].append((index, inst))

    async def _delete_role(role: Role) -> Tuple[List[str], Optional[ProvisioningError]]:
        deleted: List[str] = []
        for index, inst in sorted(surplus[role], key=lambda s: s[0], reverse=True):
            logger.info("Deleting surplus %s %d (%s)", role.display_name, index, inst.name)
            try:
                await provider.delete_instance(inst.id)
            except ProvisioningError as exc:
                exc.role, exc.index = role, index
                logger.error("Scale-down of %s halted: %s", role.display_name, exc)
                return deleted, exc
            deleted.append(inst.name)
        return deleted, None

    # Workers first: they may still be draining towards control-plane nodes
    worker_deleted, worker_error = await _delete_role(Role.WORKER)
    cp_deleted, cp_error = await _delete_role(Role.CONTROL_PLANE)
    errors = [e for e in (worker_error, cp_error) if e is not None]
    return worker_deleted + cp_deleted, errors

