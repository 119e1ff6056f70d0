"""
nodeforge/models/vault.py

Connection settings for the Vault secret store.
"""

from __future__ import annotations

from typing import Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class VaultSettings(BaseSettings):
    """
    Settings for the read-only Vault client that serves cluster secrets.
    Fields map to environment variables prefixed with `VAULT_`, e.g. `VAULT_ADDR`,
    `VAULT_ROLE_NAME`, `VAULT_DIRECT_VAULT_TOKEN`.

    Exactly one auth mode is used: Kubernetes login with `vault_role_name`,
    or `direct_vault_token`.
    """

    model_config = SettingsConfigDict(env_prefix="VAULT_")

    vault_addr: str = "http://vault.vault.svc.cluster.local:8200"
    vault_role_name: Optional[str] = None
    token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    verify_ssl: bool = True
    renew_threshold_seconds: float = 60.0
    check_interval_seconds: float = 30.0
    direct_vault_token: Optional[SecretStr] = None

    @model_validator(mode="after")
    def check_single_auth_mode(self) -> VaultSettings:
        if self.vault_role_name and self.direct_vault_token:
            raise ValueError(
                "Set either vault_role_name or direct_vault_token, not both."
            )
        return self
