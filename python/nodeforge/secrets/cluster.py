"""
nodeforge/secrets/cluster.py

Cluster secret bundle and the read-only secret store interface.

Secrets are looked up again for every node that is created and are only held
for the duration of one template render.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Protocol, Union

import yaml
from pydantic import BaseModel, SecretStr, ValidationError


class SecretStore(Protocol):
    """Read-only key/value lookup. AsyncVaultClient satisfies this."""

    async def read_secret(self, path: str) -> Dict[str, Any]: ...


class ClusterSecrets(BaseModel):
    """
    Secrets needed to bootstrap a node:
      - k3s_token: Shared cluster join token
      - tailscale_oauth_client_id/secret: OAuth client for the in-cluster Tailscale operator
      - s3_host, backup_bucket, s3_access_key, s3_secret_key: etcd snapshot target
    """

    k3s_token: SecretStr
    tailscale_oauth_client_id: SecretStr
    tailscale_oauth_client_secret: SecretStr
    s3_host: str = ""
    backup_bucket: str = ""
    s3_access_key: SecretStr = SecretStr("")
    s3_secret_key: SecretStr = SecretStr("")


class StaticSecretStore:
    """In-memory secret store keyed by path, e.g. loaded from a local YAML file."""

    def __init__(self, data: Mapping[str, Dict[str, Any]]) -> None:
        self._data = dict(data)

    async def read_secret(self, path: str) -> Dict[str, Any]:
        try:
            return dict(self._data[path])
        except KeyError:
            raise RuntimeError(f"No secret at path '{path}'") from None

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> StaticSecretStore:
        """Load a YAML mapping of secret path => {key: value}."""
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Secrets file '{path}' must contain a mapping.")
        return cls(raw)


async def load_cluster_secrets(store: SecretStore, path: str) -> ClusterSecrets:
    """
    Read and validate the cluster secret bundle at `path`.

    Raises:
        RuntimeError if missing or invalid. The message never includes values.
    """
    raw = await store.read_secret(path)
    try:
        return ClusterSecrets(**raw)
    except ValidationError as ve:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in ve.errors()})
        raise RuntimeError(
            f"Invalid cluster secrets at '{path}', bad fields: {fields}"
        ) from None
