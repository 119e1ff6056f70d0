from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from hcloud import APIException, HCloudException

from nodeforge.errors import ProvisioningError
from nodeforge.models.provisioning import InstanceRequest, LoadBalancerHandle
from nodeforge.providers.hetzner import HetznerProvider


def _server(server_id=7, name="dev-worker-server-0"):
    return SimpleNamespace(
        id=server_id,
        name=name,
        labels={"managed-by": "nodeforge", "stage": "dev"},
        private_net=[SimpleNamespace(ip="10.0.1.20")],
        public_net=SimpleNamespace(ipv4=SimpleNamespace(ip="203.0.113.5")),
        status="running",
    )


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def hetzner(client):
    provider = HetznerProvider("hcloud-token")
    provider._client = client
    return provider


async def test_existing_network_is_reused(hetzner, client):
    client.networks.get_by_name.return_value = SimpleNamespace(
        id=3, name="k3s-private-dev-network", ip_range="10.0.0.0/8"
    )
    handle = await hetzner.create_network("k3s-private-dev-network", "10.0.0.0/8")
    assert handle.id == 3
    client.networks.create.assert_not_called()


async def test_missing_network_is_created(hetzner, client):
    client.networks.get_by_name.return_value = None
    client.networks.create.return_value = SimpleNamespace(
        id=4, name="k3s-private-dev-network", ip_range="10.0.0.0/8"
    )
    handle = await hetzner.create_network("k3s-private-dev-network", "10.0.0.0/8")
    assert handle.id == 4
    client.networks.create.assert_called_once_with(
        name="k3s-private-dev-network", ip_range="10.0.0.0/8"
    )


async def test_sdk_errors_become_provisioning_errors(hetzner, client):
    client.networks.get_by_name.side_effect = HCloudException()
    with pytest.raises(ProvisioningError) as info:
        await hetzner.create_network("k3s-private-dev-network", "10.0.0.0/8")
    assert isinstance(info.value.cause, HCloudException)


async def test_transport_errors_become_provisioning_errors(hetzner, client):
    client.servers.create.side_effect = requests.exceptions.ConnectionError("dns")
    request = InstanceRequest(
        name="dev-worker-server-0",
        server_type="cx23",
        image="ubuntu-24.04",
        location="fsn1",
        network_id=9,
        private_ip="10.0.1.20",
        labels={"role": "worker"},
        user_data="#cloud-config",
    )
    with pytest.raises(ProvisioningError) as info:
        await hetzner.create_instance(request)
    assert isinstance(info.value.cause, requests.exceptions.ConnectionError)


async def test_create_instance_attaches_private_ip_and_protects(hetzner, client):
    server = _server()
    client.servers.create.return_value = SimpleNamespace(
        server=server, action=MagicMock(), next_actions=[]
    )
    client.servers.get_by_id.return_value = server
    request = InstanceRequest(
        name="dev-worker-server-0",
        server_type="cx23",
        image="ubuntu-24.04",
        location="fsn1",
        network_id=9,
        private_ip="10.0.1.20",
        firewall_ids=[2],
        placement_group_id=5,
        labels={"role": "worker"},
        user_data="#cloud-config",
        protected=True,
    )

    handle = await hetzner.create_instance(request)

    assert handle.private_ip == "10.0.1.20"
    assert handle.public_ipv4 == "203.0.113.5"
    kwargs = client.servers.create.call_args.kwargs
    assert kwargs["user_data"] == "#cloud-config"
    assert kwargs["labels"] == {"role": "worker"}
    attach = client.servers.attach_to_network.call_args
    assert attach.kwargs["ip"] == "10.0.1.20"
    client.servers.change_protection.assert_called_once_with(
        server, delete=True, rebuild=True
    )


async def test_unprotected_instance_skips_protection(hetzner, client):
    server = _server()
    client.servers.create.return_value = SimpleNamespace(
        server=server, action=None, next_actions=None
    )
    client.servers.get_by_id.return_value = server
    request = InstanceRequest(
        name="dev-worker-server-0",
        server_type="cx23",
        image="ubuntu-24.04",
        location="fsn1",
        network_id=9,
        private_ip="10.0.1.20",
    )
    await hetzner.create_instance(request)
    client.servers.change_protection.assert_not_called()


async def test_duplicate_load_balancer_target_ignored(hetzner, client):
    client.load_balancers.add_target.side_effect = APIException(
        "target_already_defined", "already there", None
    )
    lb = LoadBalancerHandle(id=1, name="k3s-public-dev-load-balancer-0")
    await hetzner.attach_load_balancer_target(lb, 7)


async def test_other_load_balancer_errors_raise(hetzner, client):
    client.load_balancers.add_target.side_effect = APIException(
        "forbidden", "nope", None
    )
    lb = LoadBalancerHandle(id=1, name="k3s-public-dev-load-balancer-0")
    with pytest.raises(ProvisioningError):
        await hetzner.attach_load_balancer_target(lb, 7)


async def test_list_instances_uses_label_selector(hetzner, client):
    client.servers.get_all.return_value = [_server()]
    handles = await hetzner.list_instances({"stage": "dev", "managed-by": "nodeforge"})
    client.servers.get_all.assert_called_once_with(
        label_selector="managed-by=nodeforge,stage=dev"
    )
    assert handles[0].name == "dev-worker-server-0"


async def test_delete_shuts_down_running_server(hetzner, client):
    server = _server()
    client.servers.get_by_id.return_value = server
    await hetzner.delete_instance(7)
    client.servers.shutdown.assert_called_once_with(server)
    client.servers.delete.assert_called_once_with(server)
