"""
nodeforge/config.py

Loads the cluster topology from YAML and runtime credentials from the
environment.

Topology file example:

    stage: dev
    control_plane_count: 3
    worker_count: 2
    network:
      subnet_cidr: 10.0.1.0/24

A file holding only `stage` (and optionally `production`) gets the stage
preset from ClusterTopology.for_stage, with any other keys layered on top.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from nodeforge.errors import ConfigError
from nodeforge.models.topology import ClusterTopology


class NodeforgeSettings(BaseSettings):
    """
    Credentials and locations needed at runtime.
    Fields map to environment variables prefixed with `NODEFORGE_`, e.g.
    `NODEFORGE_HCLOUD_TOKEN`, `NODEFORGE_TAILSCALE_API_KEY`.
    """

    model_config = SettingsConfigDict(env_prefix="NODEFORGE_")

    hcloud_token: Optional[SecretStr] = None
    tailscale_api_key: Optional[SecretStr] = None
    tailnet: str = "-"
    cluster_secrets_path: str = "nodeforge/cluster"


def topology_from_dict(raw: Dict[str, Any]) -> ClusterTopology:
    """
    Build a ClusterTopology from a decoded mapping, starting from the stage preset.

    Raises:
        ConfigError: If `stage` is missing or any value is invalid.
    """
    if "stage" not in raw:
        raise ConfigError("Topology needs a 'stage'.")
    try:
        preset = ClusterTopology.for_stage(
            str(raw["stage"]), production=bool(raw.get("production", False))
        )
        merged = preset.model_dump()
        for key, value in raw.items():
            if key == "network" and isinstance(value, dict):
                merged["network"] = {**merged["network"], **value}
            else:
                merged[key] = value
        return ClusterTopology.model_validate(merged)
    except ValidationError as ve:
        raise ConfigError(f"Invalid topology: {ve}") from ve


def load_topology(path: Union[str, Path]) -> ClusterTopology:
    """
    Read and validate a topology YAML file.

    Raises:
        ConfigError: If the file is unreadable, not a mapping, or invalid.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read topology file '{path}': {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Topology file '{path}' must contain a mapping.")
    return topology_from_dict(raw)
