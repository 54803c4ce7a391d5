"""Azure implementation of the external provider contract.

Every runner gets its own resource group, named after the instance, holding
its virtual network, subnet, optional public IP, network security group,
NIC and VM.  Deleting the resource group deletes the runner.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import ExitStack
from typing import Any, Callable, TypeVar

from garm_azure.base.async_support import AsyncMixin
from garm_azure.base.config import AzureConfig
from garm_azure.base.exceptions import (
    CloudClientError,
    NotFoundError,
    OperationCancelledError,
    ProvisioningError,
    TranslationError,
    UnsupportedArchitectureError,
)
from garm_azure.base.logger import provider_logger
from garm_azure.base.params import (
    SUPPORTED_ARCH,
    Address,
    BootstrapInstance,
    ProviderInstance,
)
from garm_azure.base.provider import ExternalProviderBlueprint
from garm_azure.azure.client import AzureCli
from garm_azure.azure.disk import resolve_cache_disk_size
from garm_azure.azure.spec import RunnerSpec
from garm_azure.azure.translate import azure_instance_to_provider_instance

T = TypeVar("T")

_STEP_ACTIONS: dict[str, str] = {
    "ephemeral_disk_size": "get max ephemeral disk size",
    "resource_group": "create resource group",
    "virtual_network": "create virtual network",
    "subnet": "create subnet",
    "public_ip": "create public IP",
    "network_security_group": "create network security group",
    "network_interface": "create NIC",
    "virtual_machine": "create VM",
}


class _CreateRun:
    """Per-call state of one CreateInstance: name, log correlation and cancel token."""

    def __init__(self, name: str, cancel: threading.Event | None = None) -> None:
        self.name = name
        self.request_id = uuid.uuid4().hex[:12]
        self.cancel = cancel if cancel is not None else threading.Event()

    def log(self, level: str, message: str, step: str | None = None) -> None:
        getattr(provider_logger, level)(
            message,
            instance=self.name,
            step=step,
            operation="CreateInstance",
            request_id=self.request_id,
        )

    def check_cancelled(self, step: str) -> None:
        if self.cancel.is_set():
            raise OperationCancelledError(
                f"creation of {self.name} cancelled before {_STEP_ACTIONS.get(step, step)}"
            )


class AzureProvider(ExternalProviderBlueprint, AsyncMixin):
    """Runner lifecycle on Azure.

    Attributes:
        controller_id: ID of the host controller, written to every resource's tags.
        cli: Shared Azure resource client.
        config: Provider config.
    """

    def __init__(self, controller_id: str, cli: AzureCli, config: AzureConfig) -> None:
        self.controller_id = controller_id
        self.cli = cli
        self.config = config

    def _step(
        self, run: _CreateRun, step: str, fn: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        run.check_cancelled(step)
        run.log("debug", _STEP_ACTIONS[step], step=step)
        try:
            return fn(*args, **kwargs)
        except CloudClientError as e:
            raise ProvisioningError(step, f"failed to {_STEP_ACTIONS[step]}: {e}") from e

    @staticmethod
    def _resource_id(step: str, resource: Any) -> str:
        resource_id = getattr(resource, "id", None)
        if not resource_id:
            raise ProvisioningError(
                step, f"failed to {_STEP_ACTIONS[step]}: response carries no resource ID"
            )
        return resource_id

    def _rollback(self, run: _CreateRun) -> None:
        """Delete the instance's resource group, logging instead of raising."""
        run.log("info", "provisioning failed, removing resource group", step="rollback")
        try:
            self.cli.delete_resource_group(run.name, True)
        except Exception as e:
            # Never raised: the caller sees the provisioning error.
            run.log("warning", f"failed to remove resource group {run.name}: {e}", step="rollback")

    def create_instance(
        self, bootstrap: BootstrapInstance, cancel: threading.Event | None = None
    ) -> ProviderInstance:
        """Provision a runner VM and everything it needs.

        The returned status is always ``running``: the VM starts executing
        its bootstrap payload sooner than the guest OS could be polled for
        readiness, so the instance is reported running as soon as Azure has
        accepted and created the VM.

        Setting *cancel* abandons the run at the next step boundary or
        poll of the in-flight Azure operation.  ``acreate_instance`` sets it
        when its task is cancelled.  Once the resource group exists, any
        failure deletes it before the error propagates.

        Raises:
            UnsupportedArchitectureError: For any architecture but amd64.
            SpecValidationError: For an invalid bootstrap request.
            CapacityError: If the disk does not fit ephemeral storage.
            ProvisioningError: If a cloud operation fails.
            OperationCancelledError: If *cancel* was set.
        """
        if bootstrap.arch != SUPPORTED_ARCH:
            raise UnsupportedArchitectureError(
                f"invalid architecture {bootstrap.arch} (supported: {SUPPORTED_ARCH})"
            )

        spec = RunnerSpec.from_bootstrap(bootstrap, self.controller_id, self.config)
        image = spec.image_details()
        name = spec.name
        run = _CreateRun(name, cancel)

        disk_size = spec.disk_size_gb
        if spec.use_ephemeral_storage:
            max_size = self._step(
                run, "ephemeral_disk_size", self.cli.get_max_ephemeral_disk_size, spec.vm_size
            )
            disk_size = resolve_cache_disk_size(spec, max_size)

        self._step(run, "resource_group", self.cli.create_resource_group, name, spec.tags)

        with ExitStack() as rollback:
            rollback.callback(self._rollback, run)

            self._step(
                run, "virtual_network",
                self.cli.create_virtual_network, name, spec.virtual_network_cidr,
                cancel=run.cancel,
            )
            subnet = self._step(
                run, "subnet",
                self.cli.create_subnet, name, spec.virtual_network_cidr,
                cancel=run.cancel,
            )

            public_ip_id: str | None = None
            public_address = ""
            if spec.allocate_public_ip:
                public_ip = self._step(
                    run, "public_ip", self.cli.create_public_ip, name, cancel=run.cancel
                )
                public_address = getattr(public_ip, "ip_address", None) or ""
                public_ip_id = self._resource_id("public_ip", public_ip)

            nsg = self._step(
                run, "network_security_group",
                self.cli.create_network_security_group, name, spec,
                cancel=run.cancel,
            )
            nic = self._step(
                run, "network_interface",
                self.cli.create_network_interface,
                name,
                self._resource_id("subnet", subnet),
                self._resource_id("network_security_group", nsg),
                public_ip_id,
                spec.use_accelerated_networking,
                cancel=run.cancel,
            )
            self._step(
                run, "virtual_machine",
                self.cli.create_virtual_machine,
                spec,
                self._resource_id("network_interface", nic),
                spec.tags,
                disk_size,
                cancel=run.cancel,
            )
            # A cancel arriving while the VM was created still undoes it.
            run.check_cancelled("completion")
            rollback.pop_all()

        instance = ProviderInstance(
            provider_id=name,
            name=name,
            os_type=bootstrap.os_type,
            os_arch=bootstrap.arch,
            os_name=image.sku,
            os_version=image.version,
            status="running",
        )
        if public_address:
            instance.addresses.append(Address(address=public_address, type="public"))

        run.log("info", f"created instance {name} ({spec.vm_size}, {disk_size} GB disk)")
        return instance

    def delete_instance(self, instance_id: str) -> None:
        try:
            self.cli.delete_resource_group(instance_id, True)
        except NotFoundError:
            provider_logger.debug(
                "resource group already gone", instance=instance_id, operation="DeleteInstance"
            )

    def get_instance(self, instance_id: str) -> ProviderInstance:
        vm = self.cli.get_instance(instance_id, instance_id)
        return azure_instance_to_provider_instance(vm)

    def list_instances(self, pool_id: str) -> list[ProviderInstance]:
        """List a pool's instances.

        Raises:
            TranslationError: If the response holds a ``None`` or malformed
                VM; no partial list is returned.
        """
        vms = self.cli.list_virtual_machines(pool_id)
        instances: list[ProviderInstance] = []
        for vm in vms or []:
            if vm is None:
                raise TranslationError("nil vm object in response")
            instances.append(azure_instance_to_provider_instance(vm))
        return instances

    def remove_all_instances(self) -> None:
        """No-op: the host deletes its instances one by one."""

    def stop(self, instance_id: str, force: bool = False) -> None:
        self.cli.deallocate_vm(instance_id, instance_id)

    def start(self, instance_id: str) -> None:
        self.cli.start_vm(instance_id, instance_id)
