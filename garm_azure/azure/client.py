"""Azure resource client.

Thin wrapper over the Azure management SDKs exposing exactly the operations
the provider needs.  Every long-running operation blocks on its poller; the creation steps take
an optional ``cancel`` event that abandons the wait.
Transport retries are left to the SDK's own pipeline policy.
"""

from __future__ import annotations

import secrets
import string
import threading
from typing import Any, NoReturn

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient

from garm_azure.base.config import AzureConfig
from garm_azure.base.exceptions import (
    CapacityError,
    CloudClientError,
    NotFoundError,
    OperationCancelledError,
)
from garm_azure.azure.spec import (
    POOL_ID_TAG,
    RunnerSpec,
    nic_name,
    nsg_name,
    os_disk_name,
    public_ip_name,
    subnet_name,
    vnet_name,
)

# Resource types removed with force deletion when a resource group goes away.
_FORCE_DELETION_TYPES = (
    "Microsoft.Compute/virtualMachines,Microsoft.Compute/virtualMachineScaleSets"
)
_MAX_RESOURCE_VOLUME_CAP = "MaxResourceVolumeMB"
_EPHEMERAL_SUPPORTED_CAP = "EphemeralOSDiskSupported"
# Seconds between cancellation checks while a long-running operation runs.
POLL_INTERVAL = 1.0


def _handle(e: AzureError, msg: str) -> NoReturn:
    exc = NotFoundError if isinstance(e, ResourceNotFoundError) else CloudClientError
    raise exc(f"{msg}: {e}") from e


def _wait(poller: Any, cancel: threading.Event | None = None) -> Any:
    """Block on a long-running operation, giving up once *cancel* is set.

    The operation itself keeps running in Azure; the caller is expected to
    delete whatever it belongs to.
    """
    if cancel is None:
        return poller.result()
    while not poller.done():
        if cancel.is_set():
            raise OperationCancelledError("operation cancelled while waiting for Azure")
        poller.wait(POLL_INTERVAL)
    return poller.result()


def _random_password(length: int = 24) -> str:
    # Azure requires three of: lower case, upper case, digit, special character.
    alphabet = string.ascii_letters + string.digits
    body = "".join(secrets.choice(alphabet) for _ in range(length))
    return f"{body}aA1!"


class AzureCli:
    """Azure management clients bound to one subscription and location.

    Safe to share between concurrent provisioning runs: nothing is mutated
    after construction.

    Attributes:
        location: Azure region resources are created in.
        resource: Resource groups client.
        network: Network client.
        compute: Compute client.
    """

    def __init__(self, config: AzureConfig, credential: Any | None = None) -> None:
        """Initialize the management clients.

        Args:
            config: Validated provider config.
            credential: azure-identity credential; resolved from
                ``config.credentials`` when omitted.
        """
        if credential is None:
            credential = config.credentials.get_credential()
        subscription_id = config.credentials.subscription_id
        self.location = config.location
        self.resource = ResourceManagementClient(credential, subscription_id)
        self.network = NetworkManagementClient(credential, subscription_id)
        self.compute = ComputeManagementClient(credential, subscription_id)

    # ── Resource groups ───────────────────────────────────────────────

    def create_resource_group(self, name: str, tags: dict[str, str]) -> Any:
        try:
            return self.resource.resource_groups.create_or_update(
                name, {"location": self.location, "tags": tags}
            )
        except AzureError as e:
            _handle(e, f"Failed to create resource group '{name}'")

    def delete_resource_group(self, name: str, force: bool = True) -> None:
        """Delete a resource group and everything in it.

        Raises:
            NotFoundError: If the resource group does not exist.
        """
        try:
            kwargs: dict[str, Any] = {}
            if force:
                kwargs["force_deletion_types"] = _FORCE_DELETION_TYPES
            self.resource.resource_groups.begin_delete(name, **kwargs).result()
        except AzureError as e:
            _handle(e, f"Failed to delete resource group '{name}'")

    # ── Network ───────────────────────────────────────────────────────

    def create_virtual_network(
        self, resource_group: str, cidr: str, cancel: threading.Event | None = None
    ) -> Any:
        try:
            return _wait(self.network.virtual_networks.begin_create_or_update(
                resource_group,
                vnet_name(resource_group),
                {
                    "location": self.location,
                    "address_space": {"address_prefixes": [cidr]},
                },
            ), cancel)
        except AzureError as e:
            _handle(e, f"Failed to create virtual network in '{resource_group}'")

    def create_subnet(
        self, resource_group: str, cidr: str, cancel: threading.Event | None = None
    ) -> Any:
        try:
            return _wait(self.network.subnets.begin_create_or_update(
                resource_group,
                vnet_name(resource_group),
                subnet_name(resource_group),
                {"address_prefix": cidr},
            ), cancel)
        except AzureError as e:
            _handle(e, f"Failed to create subnet in '{resource_group}'")

    def create_public_ip(
        self, resource_group: str, cancel: threading.Event | None = None
    ) -> Any:
        try:
            return _wait(self.network.public_ip_addresses.begin_create_or_update(
                resource_group,
                public_ip_name(resource_group),
                {
                    "location": self.location,
                    "sku": {"name": "Standard"},
                    "public_ip_allocation_method": "Static",
                    "public_ip_address_version": "IPv4",
                },
            ), cancel)
        except AzureError as e:
            _handle(e, f"Failed to create public IP in '{resource_group}'")

    def create_network_security_group(
        self, resource_group: str, spec: RunnerSpec, cancel: threading.Event | None = None
    ) -> Any:
        try:
            return _wait(self.network.network_security_groups.begin_create_or_update(
                resource_group,
                nsg_name(resource_group),
                {
                    "location": self.location,
                    "security_rules": spec.security_rules(),
                },
            ), cancel)
        except AzureError as e:
            _handle(e, f"Failed to create network security group in '{resource_group}'")

    def create_network_interface(
        self,
        resource_group: str,
        subnet_id: str,
        nsg_id: str,
        public_ip_id: str | None = None,
        accelerated_networking: bool = False,
        cancel: threading.Event | None = None,
    ) -> Any:
        ip_config: dict[str, Any] = {
            "name": f"{resource_group}-ipconfig",
            "subnet": {"id": subnet_id},
            "private_ip_allocation_method": "Dynamic",
        }
        if public_ip_id:
            ip_config["public_ip_address"] = {"id": public_ip_id}
        try:
            return _wait(self.network.network_interfaces.begin_create_or_update(
                resource_group,
                nic_name(resource_group),
                {
                    "location": self.location,
                    "enable_accelerated_networking": accelerated_networking,
                    "network_security_group": {"id": nsg_id},
                    "ip_configurations": [ip_config],
                },
            ), cancel)
        except AzureError as e:
            _handle(e, f"Failed to create network interface in '{resource_group}'")

    # ── Compute ───────────────────────────────────────────────────────

    def _vm_parameters(
        self,
        spec: RunnerSpec,
        nic_id: str,
        tags: dict[str, str],
        disk_size_gb: int,
    ) -> dict[str, Any]:
        os_disk: dict[str, Any] = {
            "name": os_disk_name(spec.name),
            "create_option": "FromImage",
            "delete_option": "Delete",
            "caching": "ReadWrite",
            "managed_disk": {"storage_account_type": spec.storage_account_type},
        }
        if disk_size_gb:
            os_disk["disk_size_gb"] = disk_size_gb
        if spec.use_ephemeral_storage:
            os_disk["caching"] = "ReadOnly"
            os_disk["diff_disk_settings"] = {"option": "Local", "placement": "ResourceDisk"}

        os_profile: dict[str, Any] = {
            "computer_name": spec.name,
            "admin_username": spec.admin_username,
            "custom_data": spec.custom_data,
        }
        if spec.ssh_public_keys:
            os_profile["linux_configuration"] = {
                "disable_password_authentication": True,
                "ssh": {
                    "public_keys": [
                        {
                            "path": f"/home/{spec.admin_username}/.ssh/authorized_keys",
                            "key_data": key,
                        }
                        for key in spec.ssh_public_keys
                    ]
                },
            }
        else:
            os_profile["admin_password"] = _random_password()

        parameters: dict[str, Any] = {
            "location": self.location,
            "tags": tags,
            "hardware_profile": {"vm_size": spec.vm_size},
            "storage_profile": {
                "image_reference": spec.image_details().as_reference(),
                "os_disk": os_disk,
            },
            "os_profile": os_profile,
            "network_profile": {
                "network_interfaces": [{"id": nic_id, "primary": True}],
            },
        }
        if spec.confidential:
            os_disk["managed_disk"]["security_profile"] = {
                "security_encryption_type": "VMGuestStateOnly"
            }
            parameters["security_profile"] = {
                "security_type": "ConfidentialVM",
                "uefi_settings": {"secure_boot_enabled": True, "v_tpm_enabled": True},
            }
        return parameters

    def create_virtual_machine(
        self,
        spec: RunnerSpec,
        nic_id: str,
        tags: dict[str, str],
        disk_size_gb: int,
        cancel: threading.Event | None = None,
    ) -> Any:
        """Create the runner VM in the resource group named after it."""
        parameters = self._vm_parameters(spec, nic_id, tags, disk_size_gb)
        try:
            return _wait(
                self.compute.virtual_machines.begin_create_or_update(
                    spec.name, spec.name, parameters
                ),
                cancel,
            )
        except AzureError as e:
            _handle(e, f"Failed to create virtual machine '{spec.name}'")

    def get_instance(self, resource_group: str, name: str) -> Any:
        """Fetch a VM including its instance view.

        Raises:
            NotFoundError: If the VM does not exist.
        """
        try:
            return self.compute.virtual_machines.get(
                resource_group, name, expand="instanceView"
            )
        except AzureError as e:
            _handle(e, f"Failed to get virtual machine '{name}'")

    def list_virtual_machines(self, pool_id: str) -> list[Any]:
        """List the subscription's VMs tagged with *pool_id*.

        ``None`` entries are passed through for the caller to reject.
        """
        try:
            return [
                vm
                for vm in self.compute.virtual_machines.list_all()
                if vm is None or (vm.tags or {}).get(POOL_ID_TAG) == pool_id
            ]
        except AzureError as e:
            _handle(e, f"Failed to list virtual machines for pool '{pool_id}'")

    def get_max_ephemeral_disk_size(self, vm_size: str) -> int:
        """Return the largest ephemeral OS disk *vm_size* supports, in GB.

        Raises:
            NotFoundError: If the VM size is not offered in the location.
            CapacityError: If the VM size has no usable local storage.
        """
        try:
            skus = self.compute.resource_skus.list(
                filter=f"location eq '{self.location}'"
            )
            for sku in skus:
                if sku.resource_type != "virtualMachines" or sku.name != vm_size:
                    continue
                caps = {c.name: c.value for c in (sku.capabilities or [])}
                if str(caps.get(_EPHEMERAL_SUPPORTED_CAP, "True")).lower() == "false":
                    raise CapacityError(f"{vm_size} does not support ephemeral OS disks")
                max_mb = caps.get(_MAX_RESOURCE_VOLUME_CAP)
                if not max_mb or int(max_mb) <= 0:
                    raise CapacityError(f"{vm_size} has no local storage for an ephemeral OS disk")
                return int(max_mb) // 1024
        except AzureError as e:
            _handle(e, f"Failed to list resource SKUs in '{self.location}'")
        raise NotFoundError(f"VM size {vm_size} not found in {self.location}")

    def deallocate_vm(self, resource_group: str, name: str) -> None:
        try:
            self.compute.virtual_machines.begin_deallocate(resource_group, name).result()
        except AzureError as e:
            _handle(e, f"Failed to deallocate virtual machine '{name}'")

    def start_vm(self, resource_group: str, name: str) -> None:
        try:
            self.compute.virtual_machines.begin_start(resource_group, name).result()
        except AzureError as e:
            _handle(e, f"Failed to start virtual machine '{name}'")
