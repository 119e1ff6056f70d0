import pytest
from aiohttp import test_utils, web

from nodeforge.config import NodeforgeSettings
from nodeforge.models.vault import VaultSettings
from nodeforge.secrets.cluster import load_cluster_secrets
from nodeforge.secrets.vault_client import AsyncVaultClient

BUNDLE = {
    "k3s_token": "vault-k3s-token",
    "tailscale_oauth_client_id": "vault-id",
    "tailscale_oauth_client_secret": "vault-secret",
}


@pytest.fixture
async def vault():
    """A fake Vault with K8s auth and one KV v2 secret. Yields (addr, state)."""
    state = {"logins": [], "reads": []}

    async def login(request):
        body = await request.json()
        state["logins"].append(body)
        return web.json_response({"auth": {"client_token": "s.k8s-token"}})

    async def read(request):
        state["reads"].append(request.headers.get("X-Vault-Token"))
        if request.match_info["path"] != "nodeforge/cluster":
            return web.json_response({"errors": []}, status=404)
        return web.json_response({"data": {"data": BUNDLE, "metadata": {}}})

    app = web.Application()
    app.router.add_post("/v1/auth/kubernetes/login", login)
    app.router.add_get("/v1/secret/data/{path:.*}", read)

    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/"), state
    finally:
        await server.close()


async def test_read_with_direct_token(vault):
    addr, state = vault
    settings = VaultSettings(vault_addr=addr, direct_vault_token="s.direct")
    async with AsyncVaultClient(settings) as client:
        secrets = await load_cluster_secrets(client, "nodeforge/cluster")
    assert secrets.k3s_token.get_secret_value() == "vault-k3s-token"
    assert state["reads"] == ["s.direct"]
    assert state["logins"] == []


async def test_kubernetes_login_then_read(vault, tmp_path):
    addr, state = vault
    jwt = tmp_path / "token"
    jwt.write_text("service-account-jwt")
    settings = VaultSettings(
        vault_addr=addr, vault_role_name="nodeforge-role", token_path=str(jwt)
    )
    async with AsyncVaultClient(settings) as client:
        data = await client.read_secret("nodeforge/cluster")
    assert data["tailscale_oauth_client_id"] == "vault-id"
    assert state["logins"] == [{"jwt": "service-account-jwt", "role": "nodeforge-role"}]
    assert state["reads"] == ["s.k8s-token"]


async def test_missing_service_account_token(vault, tmp_path):
    addr, state = vault
    settings = VaultSettings(
        vault_addr=addr,
        vault_role_name="nodeforge-role",
        token_path=str(tmp_path / "absent"),
    )
    async with AsyncVaultClient(settings) as client:
        with pytest.raises(RuntimeError, match="Cannot read Vault JWT"):
            await client.read_secret("nodeforge/cluster")
    assert state["logins"] == []
    assert state["reads"] == []


async def test_missing_secret_error_has_status_only(vault):
    addr, _ = vault
    settings = VaultSettings(vault_addr=addr, direct_vault_token="s.direct")
    async with AsyncVaultClient(settings) as client:
        with pytest.raises(RuntimeError, match="404"):
            await client.read_secret("other/path")


def test_role_and_token_are_exclusive():
    with pytest.raises(ValueError):
        VaultSettings(vault_role_name="r", direct_vault_token="t")


async def test_default_secrets_path_is_relative_to_kv_mount(vault, monkeypatch):
    monkeypatch.delenv("NODEFORGE_CLUSTER_SECRETS_PATH", raising=False)
    addr, _ = vault
    path = NodeforgeSettings().cluster_secrets_path
    settings = VaultSettings(vault_addr=addr, direct_vault_token="s.direct")
    async with AsyncVaultClient(settings) as client:
        secrets = await load_cluster_secrets(client, path)
    assert secrets.k3s_token.get_secret_value() == "vault-k3s-token"
