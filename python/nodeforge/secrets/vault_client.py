"""
nodeforge/secrets/vault_client.py

Read-only Vault client serving the cluster secret bundle from KV v2.

Auth is either a direct token (used as-is) or a Kubernetes service account
login. A login token is looked up at most every `check_interval_seconds`,
renewed once its TTL drops under `renew_threshold_seconds`, and replaced by a
fresh login if lookup or renewal fails.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple, Type

import aiofiles
import aiohttp

from nodeforge.models.validator import validate_type
from nodeforge.models.vault import VaultSettings
from nodeforge.utils.async_retry import async_retry


def _client_token(body: Dict[str, Any]) -> Optional[str]:
    auth = body.get("auth")
    if isinstance(auth, dict) and isinstance(auth.get("client_token"), str):
        return auth["client_token"]
    return None


class AsyncVaultClient:
    """SecretStore backed by Vault KV v2.

    Usage:
        async with AsyncVaultClient(VaultSettings()) as vault:
            data = await vault.read_secret("nodeforge/cluster")
    """

    def __init__(self, settings: VaultSettings) -> None:
        self._settings = settings
        self._addr = settings.vault_addr.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._token: Optional[str] = None
        self._checked_at = 0.0

    async def __aenter__(self) -> AsyncVaultClient:
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

    async def _call(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """One Vault API request. Returns (status, decoded JSON body or {})."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        headers = {"X-Vault-Token": token} if token else {}
        async with self._session.request(
            method,
            f"{self._addr}/v1/{path}",
            json=payload,
            headers=headers,
            ssl=self._settings.verify_ssl,
        ) as resp:
            body: Dict[str, Any] = {}
            if resp.content_type == "application/json":
                body = validate_type(await resp.json(), Dict[str, Any])
            return resp.status, body

    async def _login(self) -> str:
        """Kubernetes auth login with the mounted service account JWT.

        Raises:
            RuntimeError: If no role is configured, the service account JWT
                cannot be read, or Vault refuses the login.
        """
        role = self._settings.vault_role_name
        if not role:
            raise RuntimeError("Vault needs vault_role_name or direct_vault_token.")
        path = self._settings.token_path
        try:
            async with aiofiles.open(path, "r") as f:
                jwt = (await f.read()).strip()
        except OSError as exc:
            raise RuntimeError(f"Cannot read Vault JWT at '{path}'") from exc

        status, body = await self._call(
            "POST", "auth/kubernetes/login", payload={"jwt": jwt, "role": role}
        )
        token = _client_token(body) if status == 200 else None
        if token is None:
            raise RuntimeError(f"Vault login failed: HTTP {status}")
        self._token = token
        self._checked_at = time.monotonic()
        return token

    async def _valid_token(self) -> str:
        if self._settings.direct_vault_token is not None:
            return self._settings.direct_vault_token.get_secret_value()
        if self._token is None:
            return await self._login()

        now = time.monotonic()
        if now - self._checked_at < self._settings.check_interval_seconds:
            return self._token
        self._checked_at = now

        status, body = await self._call(
            "GET", "auth/token/lookup-self", token=self._token
        )
        data = body.get("data") if status == 200 else None
        ttl = data.get("ttl") if isinstance(data, dict) else None
        if not isinstance(ttl, int):
            return await self._login()
        if ttl < self._settings.renew_threshold_seconds:
            status, body = await self._call(
                "POST", "auth/token/renew-self", token=self._token
            )
            renewed = _client_token(body) if status == 200 else None
            if renewed is None:
                return await self._login()
            self._token = renewed
        return self._token

    @async_retry(retries=3, delay=1.0, retry_on=(aiohttp.ClientError,))
    async def _read(self, path: str) -> Tuple[int, Dict[str, Any]]:
        token = await self._valid_token()
        return await self._call("GET", f"secret/data/{path}", token=token)

    async def read_secret(self, path: str) -> Dict[str, Any]:
        """Read the KV v2 secret at 'secret/data/{path}'.

        Errors carry only the path and status; secret payloads are never echoed.

        Raises:
            RuntimeError: On connection failure, a non-200 response or a payload
                without KV v2 data.
        """
        try:
            status, body = await self._read(path)
        except (aiohttp.ClientError, ValueError) as exc:
            raise RuntimeError(f"Vault request failed reading '{path}': {exc}") from exc
        if status != 200:
            raise RuntimeError(f"Error reading secret '{path}': HTTP {status}")
        outer = body.get("data")
        inner = outer.get("data") if isinstance(outer, dict) else None
        if not isinstance(inner, dict):
            raise RuntimeError(f"Secret '{path}' has no KV v2 data.")
        return inner
