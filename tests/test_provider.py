"""Tests for the Azure provider lifecycle and instance provisioning."""

from unittest.mock import ANY, MagicMock
import asyncio
import logging
import threading
import time
import pytest

from garm_azure.azure.client import AzureCli
from garm_azure.azure.provider import AzureProvider
from garm_azure.base.config import AzureConfig
from garm_azure.base.exceptions import (
    CapacityError,
    CloudClientError,
    NotFoundError,
    OperationCancelledError,
    ProvisioningError,
    SpecValidationError,
    TranslationError,
    UnsupportedArchitectureError,
)
from garm_azure.base.params import BootstrapInstance


def _bootstrap(**overrides):
    data = {
        "name": "runner-1",
        "pool_id": "pool-1",
        "os_type": "linux",
        "arch": "amd64",
        "flavor": "Standard_D4ds_v5",
        "image": "Canonical:0001-com-ubuntu-server-jammy:22_04-lts-gen2:latest",
        "tools": [{
            "os": "linux",
            "architecture": "x64",
            "download_url": "https://example.com/runner.tar.gz",
            "filename": "runner.tar.gz",
        }],
    }
    data.update(overrides)
    return BootstrapInstance(**data)


def _provider(**config):
    cfg = AzureConfig(
        location="westeurope", credentials={"subscription_id": "sub"}, **config
    )
    cli = MagicMock(spec=AzureCli)
    cli.create_subnet.return_value = MagicMock(id="subnet-id")
    cli.create_public_ip.return_value = MagicMock(id="pip-id", ip_address="20.1.2.3")
    cli.create_network_security_group.return_value = MagicMock(id="nsg-id")
    cli.create_network_interface.return_value = MagicMock(id="nic-id")
    return AzureProvider("ctrl-1", cli, cfg), cli


def _called(cli):
    return [c[0] for c in cli.mock_calls]


# ══════════════════════════════════════════════════════════════════════
# CreateInstance: success
# ══════════════════════════════════════════════════════════════════════

class TestCreateInstance:
    def test_steps_in_order(self):
        provider, cli = _provider()
        provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        assert _called(cli) == [
            "create_resource_group",
            "create_virtual_network",
            "create_subnet",
            "create_public_ip",
            "create_network_security_group",
            "create_network_interface",
            "create_virtual_machine",
        ]

    def test_result(self):
        provider, cli = _provider()
        inst = provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        assert inst.provider_id == "runner-1"
        assert inst.name == "runner-1"
        assert inst.os_type == "linux"
        assert inst.os_arch == "amd64"
        assert inst.os_name == "22_04-lts-gen2"
        assert inst.os_version == "latest"
        assert inst.status == "running"
        assert [(a.address, a.type) for a in inst.addresses] == [("20.1.2.3", "public")]

    def test_wiring(self):
        provider, cli = _provider(use_accelerated_networking=True)
        provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        cli.create_resource_group.assert_called_once()
        assert cli.create_resource_group.call_args[0][0] == "runner-1"
        cli.create_virtual_network.assert_called_once_with("runner-1", "10.10.0.0/24", cancel=ANY)
        cli.create_subnet.assert_called_once_with("runner-1", "10.10.0.0/24", cancel=ANY)
        cli.create_network_interface.assert_called_once_with(
            "runner-1", "subnet-id", "nsg-id", "pip-id", True, cancel=ANY
        )
        spec, nic_id, tags, disk = cli.create_virtual_machine.call_args[0]
        assert spec.name == "runner-1"
        assert nic_id == "nic-id"
        assert tags["garm-controller-id"] == "ctrl-1"
        assert tags["garm-pool-id"] == "pool-1"
        assert disk == 127

    def test_without_public_ip(self):
        provider, cli = _provider()
        inst = provider.create_instance(_bootstrap())
        cli.create_public_ip.assert_not_called()
        assert cli.create_network_interface.call_args[0][3] is None
        assert inst.addresses == []

    def test_public_ip_without_address(self):
        provider, cli = _provider()
        cli.create_public_ip.return_value = MagicMock(id="pip-id", ip_address=None)
        inst = provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        assert inst.addresses == []
        assert cli.create_network_interface.call_args[0][3] == "pip-id"

    def test_non_ephemeral_skips_size_lookup(self):
        provider, cli = _provider()
        provider.create_instance(_bootstrap())
        cli.get_max_ephemeral_disk_size.assert_not_called()

    def test_ephemeral_confidential_disk(self):
        provider, cli = _provider(use_ephemeral_storage=True)
        cli.get_max_ephemeral_disk_size.return_value = 64
        provider.create_instance(_bootstrap(extra_specs={"confidential": True}))
        cli.get_max_ephemeral_disk_size.assert_called_once_with("Standard_D4ds_v5")
        assert cli.create_virtual_machine.call_args[0][3] == 63
        cli.delete_resource_group.assert_not_called()


# ══════════════════════════════════════════════════════════════════════
# CreateInstance: fail fast, nothing created
# ══════════════════════════════════════════════════════════════════════

class TestCreateInstanceFailFast:
    @pytest.mark.parametrize("arch", ["arm64", "arm", "i386"])
    def test_unsupported_arch(self, arch):
        provider, cli = _provider()
        with pytest.raises(UnsupportedArchitectureError, match=f"invalid architecture {arch}"):
            provider.create_instance(_bootstrap(arch=arch))
        assert cli.mock_calls == []

    def test_arch_is_validation_error(self):
        provider, _ = _provider()
        with pytest.raises(SpecValidationError):
            provider.create_instance(_bootstrap(arch="arm64"))

    def test_invalid_spec(self):
        provider, cli = _provider()
        with pytest.raises(SpecValidationError):
            provider.create_instance(_bootstrap(image="not-a-urn"))
        assert cli.mock_calls == []

    def test_missing_tools(self):
        provider, cli = _provider()
        with pytest.raises(SpecValidationError, match="tools"):
            provider.create_instance(_bootstrap(tools=[]))
        assert cli.mock_calls == []

    def test_capacity_exceeded(self):
        provider, cli = _provider(use_ephemeral_storage=True)
        cli.get_max_ephemeral_disk_size.return_value = 64
        with pytest.raises(CapacityError, match=r"maximum ephemeral disk size for Standard_D4ds_v5 is 64 GB \(requested 100\)"):
            provider.create_instance(_bootstrap(extra_specs={"disk_size_gb": 100}))
        cli.create_resource_group.assert_not_called()
        cli.delete_resource_group.assert_not_called()

    def test_size_lookup_failure(self):
        provider, cli = _provider(use_ephemeral_storage=True)
        cli.get_max_ephemeral_disk_size.side_effect = NotFoundError("no such size")
        with pytest.raises(ProvisioningError) as exc_info:
            provider.create_instance(_bootstrap())
        assert exc_info.value.step == "ephemeral_disk_size"
        cli.create_resource_group.assert_not_called()

    def test_resource_group_failure_no_rollback(self):
        provider, cli = _provider()
        cli.create_resource_group.side_effect = CloudClientError("quota")
        with pytest.raises(ProvisioningError, match="failed to create resource group") as exc_info:
            provider.create_instance(_bootstrap())
        assert exc_info.value.step == "resource_group"
        cli.delete_resource_group.assert_not_called()
        cli.create_virtual_network.assert_not_called()


# ══════════════════════════════════════════════════════════════════════
# CreateInstance: rollback
# ══════════════════════════════════════════════════════════════════════

class TestCreateInstanceRollback:
    @pytest.mark.parametrize("method,step", [
        ("create_virtual_network", "virtual_network"),
        ("create_subnet", "subnet"),
        ("create_public_ip", "public_ip"),
        ("create_network_security_group", "network_security_group"),
        ("create_network_interface", "network_interface"),
        ("create_virtual_machine", "virtual_machine"),
    ])
    def test_rollback_once_with_original_error(self, method, step):
        provider, cli = _provider()
        boom = CloudClientError("boom")
        getattr(cli, method).side_effect = boom
        with pytest.raises(ProvisioningError) as exc_info:
            provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        assert exc_info.value.step == step
        assert exc_info.value.__cause__ is boom
        cli.delete_resource_group.assert_called_once_with("runner-1", True)
        assert _called(cli)[-1] == "delete_resource_group"

    def test_nic_failure_scenario(self):
        provider, cli = _provider()
        cli.create_network_interface.side_effect = CloudClientError("nic quota exceeded")
        with pytest.raises(ProvisioningError, match="failed to create NIC: nic quota exceeded"):
            provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        cli.create_public_ip.assert_called_once()
        cli.create_virtual_machine.assert_not_called()
        cli.delete_resource_group.assert_called_once_with("runner-1", True)

    def test_rollback_failure_is_suppressed(self, caplog):
        provider, cli = _provider()
        original = CloudClientError("vm failed")
        cli.create_virtual_machine.side_effect = original
        cli.delete_resource_group.side_effect = CloudClientError("delete failed")
        with caplog.at_level(logging.WARNING, logger="garm_azure"):
            with pytest.raises(ProvisioningError) as exc_info:
                provider.create_instance(_bootstrap())
        assert exc_info.value.step == "virtual_machine"
        assert exc_info.value.__cause__ is original
        assert "failed to remove resource group runner-1" in caplog.text

    def test_missing_resource_id_rolls_back(self):
        provider, cli = _provider()
        cli.create_public_ip.return_value = MagicMock(id=None, ip_address="20.1.2.3")
        with pytest.raises(ProvisioningError) as exc_info:
            provider.create_instance(_bootstrap(extra_specs={"allocate_public_ip": True}))
        assert exc_info.value.step == "public_ip"
        cli.delete_resource_group.assert_called_once_with("runner-1", True)

    def test_interrupt_rolls_back(self):
        provider, cli = _provider()
        cli.create_virtual_machine.side_effect = KeyboardInterrupt
        with pytest.raises(KeyboardInterrupt):
            provider.create_instance(_bootstrap())
        cli.delete_resource_group.assert_called_once_with("runner-1", True)

    def test_unexpected_error_rolls_back_unwrapped(self):
        provider, cli = _provider()
        cli.create_subnet.side_effect = RuntimeError("bug")
        with pytest.raises(RuntimeError):
            provider.create_instance(_bootstrap())
        cli.delete_resource_group.assert_called_once_with("runner-1", True)


    def test_one_request_id_per_run(self, caplog):
        provider, cli = _provider()
        cli.create_virtual_machine.side_effect = CloudClientError("vm failed")
        cli.delete_resource_group.side_effect = CloudClientError("delete failed")
        with caplog.at_level(logging.DEBUG, logger="garm_azure"):
            with pytest.raises(ProvisioningError):
                provider.create_instance(_bootstrap())
        records = [r for r in caplog.records if getattr(r, "operation", None) == "CreateInstance"]
        assert {r.levelno for r in records} == {logging.DEBUG, logging.INFO, logging.WARNING}
        assert len({r.request_id for r in records}) == 1

    def test_runs_get_distinct_request_ids(self, caplog):
        provider, _ = _provider()
        with caplog.at_level(logging.INFO, logger="garm_azure"):
            provider.create_instance(_bootstrap())
            provider.create_instance(_bootstrap(name="runner-2"))
        ids = {r.request_id for r in caplog.records if getattr(r, "operation", None) == "CreateInstance"}
        assert len(ids) == 2


# ══════════════════════════════════════════════════════════════════════
# CreateInstance: cancellation
# ══════════════════════════════════════════════════════════════════════

class TestCreateInstanceCancel:
    def test_cancelled_before_start(self):
        provider, cli = _provider()
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            provider.create_instance(_bootstrap(), cancel=cancel)
        assert cli.mock_calls == []

    def test_cancel_between_steps_rolls_back(self):
        provider, cli = _provider()
        cancel = threading.Event()

        def create_subnet(*args, **kwargs):
            cancel.set()
            return MagicMock(id="subnet-id")

        cli.create_subnet.side_effect = create_subnet
        with pytest.raises(OperationCancelledError, match="before create network security group"):
            provider.create_instance(_bootstrap(), cancel=cancel)
        cli.create_network_security_group.assert_not_called()
        cli.create_virtual_machine.assert_not_called()
        cli.delete_resource_group.assert_called_once_with("runner-1", True)

    def test_cancel_during_vm_creation_rolls_back(self):
        provider, cli = _provider()
        cancel = threading.Event()
        cli.create_virtual_machine.side_effect = lambda *a, **kw: cancel.set()
        with pytest.raises(OperationCancelledError):
            provider.create_instance(_bootstrap(), cancel=cancel)
        cli.delete_resource_group.assert_called_once_with("runner-1", True)

    def test_token_reaches_cloud_calls(self):
        provider, cli = _provider()
        cancel = threading.Event()
        provider.create_instance(_bootstrap(), cancel=cancel)
        assert cli.create_virtual_network.call_args[1] == {"cancel": cancel}
        assert cli.create_virtual_machine.call_args[1] == {"cancel": cancel}
        cli.delete_resource_group.assert_not_called()


# ══════════════════════════════════════════════════════════════════════
# Lifecycle pass-throughs
# ══════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_delete(self):
        provider, cli = _provider()
        provider.delete_instance("runner-1")
        cli.delete_resource_group.assert_called_once_with("runner-1", True)

    def test_delete_missing_is_success(self):
        provider, cli = _provider()
        cli.delete_resource_group.side_effect = NotFoundError("gone")
        provider.delete_instance("missing")

    def test_delete_error(self):
        provider, cli = _provider()
        cli.delete_resource_group.side_effect = CloudClientError("locked")
        with pytest.raises(CloudClientError):
            provider.delete_instance("runner-1")

    def test_get(self):
        provider, cli = _provider()
        vm = MagicMock(provisioning_state="Succeeded", tags={"os-type": "linux"})
        vm.name = "runner-1"
        vm.instance_view.statuses = []
        cli.get_instance.return_value = vm
        inst = provider.get_instance("runner-1")
        cli.get_instance.assert_called_once_with("runner-1", "runner-1")
        assert inst.provider_id == "runner-1"
        assert inst.status == "running"

    def test_get_not_found(self):
        provider, cli = _provider()
        cli.get_instance.side_effect = NotFoundError("nope")
        with pytest.raises(NotFoundError):
            provider.get_instance("missing")

    def test_list(self):
        provider, cli = _provider()
        vms = []
        for name in ("runner-1", "runner-2"):
            vm = MagicMock(provisioning_state="Succeeded", tags={})
            vm.name = name
            vm.instance_view = None
            vms.append(vm)
        cli.list_virtual_machines.return_value = vms
        result = provider.list_instances("pool-1")
        cli.list_virtual_machines.assert_called_once_with("pool-1")
        assert [i.name for i in result] == ["runner-1", "runner-2"]

    def test_list_empty(self):
        provider, cli = _provider()
        cli.list_virtual_machines.return_value = []
        assert provider.list_instances("pool-1") == []

    def test_list_with_none_fails(self):
        provider, cli = _provider()
        vm = MagicMock(provisioning_state="Succeeded", tags={})
        vm.name = "runner-1"
        cli.list_virtual_machines.return_value = [vm, None]
        with pytest.raises(TranslationError, match="nil vm"):
            provider.list_instances("pool-1")

    def test_remove_all_is_noop(self):
        provider, cli = _provider()
        provider.remove_all_instances()
        assert cli.mock_calls == []

    def test_stop_deallocates(self):
        provider, cli = _provider()
        provider.stop("runner-1", force=True)
        cli.deallocate_vm.assert_called_once_with("runner-1", "runner-1")

    def test_start(self):
        provider, cli = _provider()
        provider.start("runner-1")
        cli.start_vm.assert_called_once_with("runner-1", "runner-1")


class TestAsync:
    def test_async_variants(self):
        provider, cli = _provider()
        assert hasattr(provider, "acreate_instance")
        asyncio.run(provider.astart("runner-1"))
        cli.start_vm.assert_called_once_with("runner-1", "runner-1")

    def test_async_create(self):
        provider, cli = _provider()
        inst = asyncio.run(provider.acreate_instance(_bootstrap()))
        assert inst.status == "running"

    def test_cancelling_create_rolls_back(self):
        provider, cli = _provider()
        started = threading.Event()

        def slow_subnet(*args, **kwargs):
            started.set()
            time.sleep(0.3)
            return MagicMock(id="subnet-id")

        cli.create_subnet.side_effect = slow_subnet

        async def scenario():
            task = asyncio.create_task(provider.acreate_instance(_bootstrap()))
            assert await asyncio.to_thread(started.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        # Rollback has finished by the time the caller sees the cancellation.
        cli.delete_resource_group.assert_called_once_with("runner-1", True)
        cli.create_network_security_group.assert_not_called()
        cli.create_virtual_machine.assert_not_called()

    def test_cancel_times_out_create(self):
        provider, cli = _provider()
        cli.create_virtual_network.side_effect = lambda *a, **kw: time.sleep(0.3)

        async def scenario():
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(provider.acreate_instance(_bootstrap()), 0.05)

        asyncio.run(scenario())
        cli.create_subnet.assert_not_called()
        cli.delete_resource_group.assert_called_once_with("runner-1", True)
