"""
nodeforge/models/nodes.py

Defines Pydantic models for provisioned nodes:
 - NodeState
 - ProvisionedNode
 - BootstrapContext
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, SecretStr

from nodeforge.models.topology import API_SERVER_PORT, Role


class NodeState(str, Enum):
    """Sequencer state of one node slot."""

    PENDING = "pending"
    CREATING = "creating"
    READY = "ready"
    FAILED = "failed"


class ProvisionedNode(BaseModel):
    """A server that exists for a topology slot.

    Attributes:
        role: Node role.
        index: Index within the role.
        private_ip: Deterministic address on the private network.
        server_id: Provider handle of the server.
        server_name: Provider-side server name.
        public_ipv4: Public address, if the provider assigned one.
        tailnet_hostname: Hostname the node registers in the tailnet.
        is_bootstrap: True only for control-plane index 0.
        adopted: True if the server already existed and was not created this run.
    """

    role: Role
    index: int
    private_ip: str
    server_id: int
    server_name: str
    public_ipv4: Optional[str] = None
    tailnet_hostname: str
    is_bootstrap: bool = False
    adopted: bool = False


TEMPLATE_PLACEHOLDERS = (
    "STAGE_NAME",
    "PRIVATE_IP_RANGE",
    "NETWORK_GATEWAY",
    "K3S_TOKEN",
    "SERVER_API",
    "NODE_IP",
    "ROLE",
    "TAILSCALE_HOSTNAME",
    "REGISTRATION_TAILNET_AUTH_KEY",
    "KUBERNETES_TAILSCALE_OAUTH_CLIENT_ID",
    "KUBERNETES_TAILSCALE_OAUTH_CLIENT_SECRET",
    "KUBERNETES_TAILSCALE_HOSTNAME",
    "S3_HOST",
    "BACKUP_BUCKET",
    "S3_ACCESS_KEY",
    "S3_SECRET_KEY",
)


class BootstrapContext(BaseModel):
    """Values substituted into the cloud-init template for a single node.

    Built right before the node's creation call and dropped afterwards. Secret
    fields are SecretStr so they never show up in reprs or log lines.
    """

    stage: str
    private_ip_range: str
    network_gateway: str
    cluster_join_token: SecretStr
    bootstrap_address: str
    node_ip: str
    role: str
    hostname: str
    tailnet_registration_key: SecretStr
    tailscale_oauth_client_id: SecretStr
    tailscale_oauth_client_secret: SecretStr
    cluster_tailnet_hostname: str
    s3_host: str = ""
    backup_bucket: str = ""
    s3_access_key: SecretStr = SecretStr("")
    s3_secret_key: SecretStr = SecretStr("")

    @property
    def api_endpoint(self) -> str:
        return f"https://{self.bootstrap_address}:{API_SERVER_PORT}"

    def template_values(self) -> Dict[str, str]:
        """Placeholder name => value mapping for the bootstrap template."""
        return {
            "STAGE_NAME": self.stage,
            "PRIVATE_IP_RANGE": self.private_ip_range,
            "NETWORK_GATEWAY": self.network_gateway,
            "K3S_TOKEN": self.cluster_join_token.get_secret_value(),
            "SERVER_API": self.api_endpoint,
            "NODE_IP": self.node_ip,
            "ROLE": self.role,
            "TAILSCALE_HOSTNAME": self.hostname,
            "REGISTRATION_TAILNET_AUTH_KEY": self.tailnet_registration_key.get_secret_value(),
            "KUBERNETES_TAILSCALE_OAUTH_CLIENT_ID": self.tailscale_oauth_client_id.get_secret_value(),
            "KUBERNETES_TAILSCALE_OAUTH_CLIENT_SECRET": self.tailscale_oauth_client_secret.get_secret_value(),
            "KUBERNETES_TAILSCALE_HOSTNAME": self.cluster_tailnet_hostname,
            "S3_HOST": self.s3_host,
            "BACKUP_BUCKET": self.backup_bucket,
            "S3_ACCESS_KEY": self.s3_access_key.get_secret_value(),
            "S3_SECRET_KEY": self.s3_secret_key.get_secret_value(),
        }
