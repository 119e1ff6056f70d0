"""
nodeforge/registry/tailscale.py

Device registry backed by the Tailscale v2 REST API:
  - GET    /api/v2/tailnet/{tailnet}/devices
  - DELETE /api/v2/device/{deviceId}
  - POST   /api/v2/tailnet/{tailnet}/keys
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Type

import aiohttp
from pydantic import SecretStr

from nodeforge.errors import RegistryError
from nodeforge.models.registry import RegistryDevice
from nodeforge.models.validator import validate_type
from nodeforge.registry.base import DeviceFilter, DeviceRegistry
from nodeforge.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

TAILSCALE_API = "https://api.tailscale.com/api/v2"


def parse_device(raw: Dict[str, Any]) -> RegistryDevice:
    """Build a RegistryDevice from one entry of the devices listing.

    Deletion uses `nodeId` when present; `hostname` falls back to the first
    label of the MagicDNS name.
    """
    name = str(raw.get("name", ""))
    hostname = raw.get("hostname") or name.split(".", 1)[0]
    return RegistryDevice(
        id=str(raw.get("nodeId") or raw["id"]),
        hostname=hostname,
        name=name,
        tags=frozenset(raw.get("tags") or []),
    )


class TailscaleRegistry(DeviceRegistry):
    """An asynchronous Tailscale API client.

    Args:
        api_key: Tailscale API access token.
        tailnet: Tailnet name, "-" selects the key's default tailnet.
        base_url: API root, overridable for tests.
    """

    def __init__(
        self,
        api_key: str,
        tailnet: str = "-",
        base_url: str = TAILSCALE_API,
    ) -> None:
        self._api_key = SecretStr(api_key)
        self._tailnet = tailnet
        self._base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> TailscaleRegistry:
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key.get_secret_value()}"}

    @async_retry(retries=3, delay=2.0, noisy=True, retry_on=(aiohttp.ClientError,))
    async def _fetch_devices(self) -> List[Dict[str, Any]]:
        session = await self.ensure_session()
        url = f"{self._base_url}/tailnet/{self._tailnet}/devices"
        async with session.get(url, headers=self._headers) as resp:
            if resp.status != 200:
                raise RegistryError(f"Listing devices failed: HTTP {resp.status}")
            js = validate_type(await resp.json(), Dict[str, Any])
        return validate_type(js.get("devices", []), List[Dict[str, Any]])

    async def list_devices(
        self, tag_filter: Optional[DeviceFilter] = None
    ) -> List[RegistryDevice]:
        try:
            raw_devices = await self._fetch_devices()
        except (aiohttp.ClientError, ValueError) as exc:
            raise RegistryError(f"Listing devices failed: {exc}") from exc
        devices = [parse_device(raw) for raw in raw_devices]
        if tag_filter is not None:
            devices = [d for d in devices if tag_filter(d)]
        return devices

    async def delete_device(self, device_id: str) -> None:
        session = await self.ensure_session()
        url = f"{self._base_url}/device/{device_id}"
        try:
            async with session.delete(url, headers=self._headers) as resp:
                if resp.status == 404:
                    logger.info("Device %s already gone", device_id)
                    return
                if resp.status not in (200, 204):
                    body = await resp.text()
                    raise RegistryError(
                        f"Deleting device failed: HTTP {resp.status} {body[:200]}",
                        device_id=device_id,
                    )
        except aiohttp.ClientError as exc:
            raise RegistryError(
                f"Deleting device failed: {exc}", device_id=device_id
            ) from exc

    async def create_registration_key(
        self,
        description: str,
        tags: Iterable[str],
        expiry_seconds: int = 1800,
    ) -> SecretStr:
        session = await self.ensure_session()
        url = f"{self._base_url}/tailnet/{self._tailnet}/keys"
        payload = {
            "description": description[:50],
            "expirySeconds": expiry_seconds,
            "capabilities": {
                "devices": {
                    "create": {
                        "reusable": False,
                        "ephemeral": False,
                        "preauthorized": True,
                        "tags": sorted(tags),
                    }
                }
            },
        }
        try:
            async with session.post(url, json=payload, headers=self._headers) as resp:
                if resp.status != 200:
                    raise RegistryError(
                        f"Creating registration key '{description}' failed: HTTP {resp.status}"
                    )
                js = validate_type(await resp.json(), Dict[str, Any])
        except (aiohttp.ClientError, ValueError) as exc:
            raise RegistryError(
                f"Creating registration key '{description}' failed: {exc}"
            ) from exc
        key = js.get("key")
        if not isinstance(key, str) or not key:
            raise RegistryError(f"No key returned for '{description}'")
        return SecretStr(key)
