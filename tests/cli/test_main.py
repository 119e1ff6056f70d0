import json
import sys

import pytest

from nodeforge.cli import main as cli


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["nodeforge", *argv])
    cli.main()


def test_plan_prints_slots(monkeypatch, capsys):
    _run(monkeypatch, "plan", "--stage", "dev")
    rows = json.loads(capsys.readouterr().out)
    assert rows == [
        {
            "role": "control-plane",
            "index": "0",
            "bootstrap_role": "bootstrap",
            "server_name": "dev-control-plane-server-0",
            "private_ip": "10.0.1.10",
            "tailnet_hostname": "dev-hetzner-control-plane-server-0",
        }
    ]


def test_plan_from_topology_file(monkeypatch, capsys, tmp_path):
    f = tmp_path / "topology.yaml"
    f.write_text("stage: dev\nworker_count: 2\n")
    _run(monkeypatch, "plan", "--topology", str(f))
    rows = json.loads(capsys.readouterr().out)
    assert [r["server_name"] for r in rows][-1] == "dev-worker-server-1"


def test_invalid_topology_exits_1(monkeypatch, capsys, tmp_path):
    f = tmp_path / "topology.yaml"
    f.write_text("stage: dev\ncontrol_plane_count: 11\n")
    with pytest.raises(SystemExit) as info:
        _run(monkeypatch, "plan", "--topology", str(f))
    assert info.value.code == 1
    assert "invalid topology" in capsys.readouterr().err


def test_destroy_requires_confirmation(monkeypatch, capsys):
    with pytest.raises(SystemExit) as info:
        _run(monkeypatch, "destroy", "--stage", "dev")
    assert info.value.code == 1
    assert "--yes" in capsys.readouterr().err


def test_deploy_without_credentials_exits_1(monkeypatch, capsys):
    monkeypatch.delenv("NODEFORGE_HCLOUD_TOKEN", raising=False)
    monkeypatch.delenv("NODEFORGE_TAILSCALE_API_KEY", raising=False)
    with pytest.raises(SystemExit) as info:
        _run(monkeypatch, "deploy", "--stage", "dev", "--secrets-file", "x.yaml")
    assert info.value.code == 1
    assert "NODEFORGE_HCLOUD_TOKEN" in capsys.readouterr().err
