"""Tests for provisioner.cli module."""

from __future__ import annotations

import json
import signal
from unittest.mock import MagicMock, patch

import pytest

from provisioner.cli import main, show_config
from provisioner.exceptions import DomainNotFound, ManagerError, ProvisioningCancelled, VmAlreadyExists


@pytest.fixture
def manager():
    mgr = MagicMock()
    with patch("provisioner.cli.VMManager.from_config", return_value=mgr):
        yield mgr


class TestShowConfig:
    def test_prints_fields(self, provisioner_config, capsys):
        show_config(provisioner_config)
        out = capsys.readouterr().out
        assert "storage_pool: default" in out
        assert "rollback_on_failure: True" in out


class TestMain:
    def test_show_config(self, clean_env, capsys):
        assert main(["show-config"]) == 0
        assert "libvirt_uri: qemu:///system" in capsys.readouterr().out

    def test_config_error(self, clean_env, mock_env, capsys):
        mock_env(PASSWORD_LENGTH="4")
        assert main(["list"]) == 1
        assert "[ERROR]" in capsys.readouterr().out

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            main([])

    def test_create_success(self, clean_env, manager, capsys):
        record = MagicMock()
        record.to_dict.return_value = {"name": "web"}
        manager.create_and_start.return_value = record
        rc = main(["create", "--name", "web", "--user", "user1", "--cpu", "4"])
        assert rc == 0
        payload = manager.create_and_start.call_args[0][0]
        assert payload == {"name": "web", "user": "user1", "cpu": 4}
        out = capsys.readouterr().out
        assert json.loads(out[out.index("{"):]) == {"success": True, "vm": {"name": "web"}}
        manager.close.assert_called_once()

    def test_create_failure_returns_one(self, clean_env, manager, capsys):
        manager.create_and_start.side_effect = VmAlreadyExists("web")
        assert main(["create", "--name", "web", "--user", "user1"]) == 1
        assert '"VM_ALREADY_EXISTS"' in capsys.readouterr().out

    def test_create_with_timeout_sets_deadline(self, clean_env, manager):
        record = MagicMock()
        record.to_dict.return_value = {}
        manager.create_and_start.return_value = record
        main(["create", "--name", "web", "--user", "user1", "--timeout", "30"])
        assert manager.create_and_start.call_args[1]["deadline"] is not None

    def test_interrupted_create_cancels_pipeline(self, clean_env, manager, capsys):
        before = signal.getsignal(signal.SIGINT)

        def _create(payload, cancel=None, deadline=None):
            signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
            assert cancel.is_set()
            raise ProvisioningCancelled(payload["name"], "storage")

        manager.create_and_start.side_effect = _create
        assert main(["create", "--name", "web", "--user", "user1"]) == 130
        out = capsys.readouterr().out
        assert "Cancelling" in out
        assert '"PROVISIONING_CANCELLED"' in out
        assert signal.getsignal(signal.SIGINT) is before
        manager.close.assert_called_once()

    def test_status(self, clean_env, manager, capsys):
        manager.vm_status.return_value = {"name": "web", "state": "running", "state_code": 1}
        assert main(["status", "web"]) == 0
        assert '"running"' in capsys.readouterr().out

    def test_status_missing(self, clean_env, manager, capsys):
        manager.vm_status.side_effect = DomainNotFound("ghost")
        assert main(["status", "ghost"]) == 1
        assert "not found" in capsys.readouterr().out
        manager.close.assert_called_once()

    def test_list(self, clean_env, manager, capsys):
        manager.list_vms.return_value = [{"name": "a", "state": "running"}]
        assert main(["list"]) == 0
        assert json.loads(capsys.readouterr().out) == [{"name": "a", "state": "running"}]

    def test_network_without_hypervisor(self, clean_env, capsys):
        with patch("provisioner.cli.VMManager.from_config") as from_config:
            assert main(["network", "user2"]) == 0
        from_config.assert_not_called()
        assert json.loads(capsys.readouterr().out)["gateway"] == "192.168.101.1"

    def test_network_unknown_user(self, clean_env, capsys):
        assert main(["network", "nobody"]) == 1
        assert "[ERROR]" in capsys.readouterr().out

    def test_network_ensure(self, clean_env, manager):
        network = MagicMock()
        network.name = "vm-network-100"
        manager.networks.resolve_network.return_value = network
        assert main(["network", "user1", "--ensure"]) == 0
        manager.networks.resolve_network.assert_called_once_with("user1")

    def test_ssh_info(self, clean_env, manager, capsys):
        manager.get_ssh_info.return_value = {"address": "192.168.100.10"}
        assert main(["ssh-info", "web", "--user", "user1"]) == 0
        manager.get_ssh_info.assert_called_once_with("web", "user1", timeout=60.0)

    def test_connection_failure(self, clean_env, capsys):
        with patch("provisioner.cli.VMManager.from_config", side_effect=ManagerError("cannot connect")):
            assert main(["list"]) == 1
        assert "cannot connect" in capsys.readouterr().out

    def test_unexpected_error(self, clean_env, manager, capsys):
        manager.list_vms.side_effect = ValueError("boom")
        assert main(["list"]) == 1
        assert "Unexpected error: boom" in capsys.readouterr().out
