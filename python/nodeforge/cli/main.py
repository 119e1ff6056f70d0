#!/usr/bin/env python3
"""
nodeforge/cli/main.py

CLI for cluster provisioning:
  - plan                Print node slots, addresses and hostnames (no API calls)
  - deploy              Reconcile Hetzner servers and the tailnet to the topology
  - destroy             Scale every role to zero and clean up the tailnet
  - reconcile-registry  Remove orphaned tailnet devices only

Credentials come from the environment (see NodeforgeSettings): NODEFORGE_HCLOUD_TOKEN,
NODEFORGE_TAILSCALE_API_KEY, NODEFORGE_TAILNET. Cluster secrets are read from
Vault, or from a local YAML file with --secrets-file.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, List

from nodeforge.config import NodeforgeSettings, load_topology
from nodeforge.deployment.cluster import deploy_cluster, destroy_cluster, plan_nodes
from nodeforge.deployment.reconcile import reconcile_registry
from nodeforge.errors import NodeforgeError
from nodeforge.models.registry import TagFilter
from nodeforge.models.reports import DeployReport
from nodeforge.models.topology import ClusterTopology
from nodeforge.models.vault import VaultSettings
from nodeforge.providers.hetzner import HetznerProvider
from nodeforge.registry.tailscale import TailscaleRegistry
from nodeforge.secrets.cluster import SecretStore, StaticSecretStore
from nodeforge.secrets.vault_client import AsyncVaultClient
from nodeforge.utils.template import load_template

logger = logging.getLogger("nodeforge.cli")


#
# Subcommand handlers
#
async def run_plan(args: argparse.Namespace) -> None:
    """Print the slots of the topology as JSON."""
    topology = _build_topology(args)
    print(json.dumps(plan_nodes(topology), indent=2))


async def run_deploy(args: argparse.Namespace) -> None:
    """
    Run one reconciliation pass.

    Exits 1 on a fatal error or if the report carries any error.
    """
    topology = _build_topology(args)
    settings = _build_settings(require_hcloud=True)
    stop_event = _install_stop_handler()
    try:
        template = await load_template(args.template)
        async with _secret_store(args) as store, TailscaleRegistry(
            _secret(settings.tailscale_api_key), tailnet=settings.tailnet
        ) as registry:
            report = await deploy_cluster(
                topology,
                HetznerProvider(_secret(settings.hcloud_token)),
                registry,
                store,
                settings.cluster_secrets_path,
                template=template,
                stop_event=stop_event,
            )
    except NodeforgeError as exc:
        print(f"Error: deploy of stage '{topology.stage}' failed: {exc}", file=sys.stderr)
        sys.exit(1)
    _finish(report)


async def run_destroy(args: argparse.Namespace) -> None:
    """Delete every server of the stage and its tailnet devices."""
    topology = _build_topology(args)
    if not args.yes:
        print(
            f"Refusing to destroy stage '{topology.stage}' without --yes.",
            file=sys.stderr,
        )
        sys.exit(1)
    settings = _build_settings(require_hcloud=True)
    stop_event = _install_stop_handler()
    try:
        async with _secret_store(args) as store, TailscaleRegistry(
            _secret(settings.tailscale_api_key), tailnet=settings.tailnet
        ) as registry:
            report = await destroy_cluster(
                topology,
                HetznerProvider(_secret(settings.hcloud_token)),
                registry,
                store,
                settings.cluster_secrets_path,
                stop_event=stop_event,
            )
    except NodeforgeError as exc:
        print(f"Error: destroy of stage '{topology.stage}' failed: {exc}", file=sys.stderr)
        sys.exit(1)
    _finish(report)


async def run_reconcile_registry(args: argparse.Namespace) -> None:
    """Delete tailnet devices of the stage that the topology does not expect."""
    topology = _build_topology(args)
    settings = _build_settings(require_hcloud=False)
    try:
        async with TailscaleRegistry(
            _secret(settings.tailscale_api_key), tailnet=settings.tailnet
        ) as registry:
            report = await reconcile_registry(
                registry,
                topology.expected_hostnames(),
                TagFilter(required_tags=frozenset(topology.registry_tags())),
            )
    except NodeforgeError as exc:
        print(f"Error: cannot reconcile registry: {exc}", file=sys.stderr)
        sys.exit(1)
    print(report.model_dump_json(indent=2))
    if not report.ok:
        sys.exit(1)


#
# Helpers
#
def _build_topology(args: argparse.Namespace) -> ClusterTopology:
    """
    Topology from --topology FILE, or the preset for --stage.

    Exits with error on invalid configuration.
    """
    try:
        if args.topology:
            return load_topology(args.topology)
        return ClusterTopology.for_stage(args.stage, production=args.production)
    except NodeforgeError as exc:
        print(f"Error: invalid topology: {exc}", file=sys.stderr)
        sys.exit(1)


def _build_settings(require_hcloud: bool) -> NodeforgeSettings:
    settings = NodeforgeSettings()
    missing: List[str] = []
    if require_hcloud and settings.hcloud_token is None:
        missing.append("NODEFORGE_HCLOUD_TOKEN")
    if settings.tailscale_api_key is None:
        missing.append("NODEFORGE_TAILSCALE_API_KEY")
    if missing:
        print(f"Error: missing environment variables: {missing}", file=sys.stderr)
        sys.exit(1)
    return settings


def _secret(value: Any) -> str:
    return value.get_secret_value() if value is not None else ""


@contextlib.asynccontextmanager
async def _secret_store(args: argparse.Namespace) -> AsyncIterator[SecretStore]:
    """A StaticSecretStore for --secrets-file, otherwise an AsyncVaultClient."""
    if args.secrets_file:
        try:
            store = StaticSecretStore.from_file(args.secrets_file)
        except (OSError, ValueError) as exc:
            print(f"Error: cannot load secrets file: {exc}", file=sys.stderr)
            sys.exit(1)
        yield store
        return
    settings = VaultSettings(
        vault_addr=args.vault_addr,
        vault_role_name=None if args.vault_token else args.vault_role_name,
        direct_vault_token=args.vault_token,
        token_path=args.vault_token_path,
        verify_ssl=not args.no_verify_ssl,
    )
    async with AsyncVaultClient(settings) as vault:
        yield vault


def _install_stop_handler() -> asyncio.Event:
    """SIGINT/SIGTERM stop new node creation; in-flight calls complete."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        logger.warning("Stop requested; finishing in-flight operations")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop)
    return stop_event


def _report_summary(report: DeployReport) -> Dict[str, Any]:
    return {
        "stage": report.stage,
        "nodes": [
            {
                "server_name": node.server_name,
                "private_ip": node.private_ip,
                "tailnet_hostname": node.tailnet_hostname,
                "adopted": node.adopted,
            }
            for node in report.nodes
        ],
        "states": {
            r.role.value: {str(i): s.value for i, s in sorted(r.states.items())}
            for r in report.rollouts
        },
        "stopped": any(r.stopped for r in report.rollouts),
        "deleted_servers": report.deleted_servers,
        "registry": report.registry.model_dump() if report.registry else None,
        "errors": [str(e) for e in report.errors],
    }


def _finish(report: DeployReport) -> None:
    print(json.dumps(_report_summary(report), indent=2))
    for err in report.errors:
        print(f"Error: {err}", file=sys.stderr)
    if not report.ok:
        sys.exit(1)


def _add_topology_args(subparser: argparse.ArgumentParser) -> None:
    group = subparser.add_mutually_exclusive_group(required=True)
    group.add_argument("--topology", help="Path to a topology YAML file.")
    group.add_argument("--stage", help="Use the built-in preset for this stage.")
    subparser.add_argument(
        "--production",
        action="store_true",
        default=False,
        help="With --stage: use the production preset (protected servers, load balancer).",
    )


def _add_secret_args(subparser: argparse.ArgumentParser) -> None:
    """
    Add arguments selecting the cluster secret source: a local YAML file, or
    Vault with K8s auth or a direct token.
    """
    subparser.add_argument(
        "--secrets-file",
        help="YAML mapping of secret path => values, used instead of Vault.",
    )
    group = subparser.add_mutually_exclusive_group()
    group.add_argument(
        "--vault-role-name",
        help="Vault K8s auth role name (mutually exclusive with --vault-token).",
        default="nodeforge-role",
    )
    group.add_argument(
        "--vault-token",
        help="Direct Vault token (mutually exclusive with --vault-role-name).",
    )
    subparser.add_argument(
        "--vault-addr",
        default="http://vault.vault.svc.cluster.local:8200",
        help="Vault address (default: http://vault.vault.svc.cluster.local:8200).",
    )
    subparser.add_argument(
        "--vault-token-path",
        default="/var/run/secrets/kubernetes.io/serviceaccount/token",
        help=(
            "Path to JWT token for K8s auth. "
            "(default: /var/run/secrets/kubernetes.io/serviceaccount/token)."
        ),
    )
    subparser.add_argument(
        "--no-verify-ssl",
        action="store_true",
        default=False,
        help="Disable SSL certificate verification (default: verify SSL).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nodeforge",
        description="Provision and scale k3s clusters on Hetzner Cloud joined to a tailnet.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
        help="Sub-command to run. Use -h/--help after a subcommand for more usage details.",
    )

    #
    # plan
    #
    plan_parser = subparsers.add_parser(
        "plan", help="Print node slots, private IPs and hostnames."
    )
    _add_topology_args(plan_parser)
    plan_parser.set_defaults(func=run_plan)

    #
    # deploy
    #
    deploy_parser = subparsers.add_parser(
        "deploy", help="Create or scale the cluster to match the topology."
    )
    _add_topology_args(deploy_parser)
    _add_secret_args(deploy_parser)
    deploy_parser.add_argument(
        "--template",
        help="Bootstrap cloud-init template (default: packaged cloud-config.yaml).",
    )
    deploy_parser.set_defaults(func=run_deploy)

    #
    # destroy
    #
    destroy_parser = subparsers.add_parser(
        "destroy",
        help="Delete all servers of the stage; network and load balancers stay.",
    )
    _add_topology_args(destroy_parser)
    _add_secret_args(destroy_parser)
    destroy_parser.add_argument(
        "--yes",
        action="store_true",
        default=False,
        help="Confirm deletion of every server in the stage.",
    )
    destroy_parser.set_defaults(func=run_destroy)

    #
    # reconcile-registry
    #
    reconcile_parser = subparsers.add_parser(
        "reconcile-registry",
        help="Remove tailnet devices of the stage that are not in the topology.",
    )
    _add_topology_args(reconcile_parser)
    reconcile_parser.set_defaults(func=run_reconcile_registry)

    return parser


def main() -> None:
    """CLI entry point for the nodeforge console script."""
    args = build_parser().parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # The `args.func` is an async function, so we run it via asyncio
    func: Callable[[argparse.Namespace], Coroutine[Any, Any, None]] = args.func
    asyncio.run(func(args))


if __name__ == "__main__":
    main()
