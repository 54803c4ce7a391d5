"""Runner spec builder.

Turns a :class:`BootstrapInstance` plus the provider config into the
immutable :class:`RunnerSpec` every provisioning step reads from.  Pure,
no I/O.
"""

from __future__ import annotations

import base64
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from garm_azure.base.config import AzureConfig
from garm_azure.base.exceptions import SpecValidationError
from garm_azure.base.params import BootstrapInstance
from garm_azure.azure.userdata import render_userdata

CONTROLLER_ID_TAG = "garm-controller-id"
POOL_ID_TAG = "garm-pool-id"
OS_TYPE_TAG = "os-type"
OS_ARCH_TAG = "os-arch"
OS_NAME_TAG = "os-name"
OS_VERSION_TAG = "os-version"

DEFAULT_DISK_SIZE_GB = 127
DEFAULT_STORAGE_ACCOUNT_TYPE = "Standard_LRS"
ADMIN_USERNAME = "garm"
_FIRST_RULE_PRIORITY = 100
_SUPPORTED_PROTOCOLS = {"tcp": "Tcp", "udp": "Udp"}


# Every resource of an instance lives in a resource group named after it.
def vnet_name(name: str) -> str:
    return f"{name}-vnet"


def subnet_name(name: str) -> str:
    return f"{name}-subnet"


def public_ip_name(name: str) -> str:
    return f"{name}-ip"


def nsg_name(name: str) -> str:
    return f"{name}-nsg"


def nic_name(name: str) -> str:
    return f"{name}-nic"


def os_disk_name(name: str) -> str:
    return f"{name}-disk"


class ExtraSpecs(BaseModel):
    """Pool-level overrides carried in ``BootstrapInstance.extra_specs``."""

    model_config = ConfigDict(extra="forbid")

    allocate_public_ip: bool = False
    confidential: bool = False
    open_inbound_ports: dict[str, list[int]] = Field(default_factory=dict)
    storage_account_type: str | None = None
    disk_size_gb: int | None = Field(default=None, ge=0)
    extra_tags: dict[str, str] = Field(default_factory=dict)
    ssh_public_keys: list[str] = Field(default_factory=list)
    use_ephemeral_storage: bool | None = None
    use_accelerated_networking: bool | None = None
    virtual_network_cidr: str | None = None
    vm_size: str | None = None
    image: str | None = None

    @field_validator("open_inbound_ports")
    @classmethod
    def check_protocols(cls, value: dict[str, list[int]]) -> dict[str, list[int]]:
        for proto, ports in value.items():
            if proto.lower() not in _SUPPORTED_PROTOCOLS:
                raise ValueError(f"unsupported protocol {proto!r} (supported: tcp, udp)")
            for port in ports:
                if not 0 < port < 65536:
                    raise ValueError(f"invalid port {port}")
        return value


class ImageDetails(BaseModel):
    """Marketplace image reference parsed from a URN."""

    model_config = ConfigDict(frozen=True)

    publisher: str
    offer: str
    sku: str
    version: str

    @classmethod
    def from_urn(cls, urn: str) -> ImageDetails:
        """Parse ``Publisher:Offer:Sku:Version``.

        Raises:
            SpecValidationError: If the URN is malformed.
        """
        parts = urn.split(":")
        if len(parts) != 4 or not all(p.strip() for p in parts):
            raise SpecValidationError(
                f"invalid image URN {urn!r} (expected Publisher:Offer:Sku:Version)"
            )
        publisher, offer, sku, version = (p.strip() for p in parts)
        return cls(publisher=publisher, offer=offer, sku=sku, version=version)

    def as_reference(self) -> dict[str, str]:
        return {
            "publisher": self.publisher,
            "offer": self.offer,
            "sku": self.sku,
            "version": self.version,
        }


class RunnerSpec(BaseModel):
    """Everything needed to provision one runner instance.

    ``name`` doubles as the resource group name and the instance ID.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    bootstrap: BootstrapInstance
    location: str
    vm_size: str
    image: str
    disk_size_gb: int
    storage_account_type: str
    use_ephemeral_storage: bool
    confidential: bool
    virtual_network_cidr: str
    allocate_public_ip: bool
    use_accelerated_networking: bool
    open_inbound_ports: dict[str, list[int]] = Field(default_factory=dict)
    ssh_public_keys: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    admin_username: str = ADMIN_USERNAME
    # base64 bootstrap payload for os_profile.custom_data
    custom_data: str = ""

    @classmethod
    def from_bootstrap(
        cls,
        bootstrap: BootstrapInstance,
        controller_id: str,
        config: AzureConfig,
    ) -> RunnerSpec:
        """Build the runner spec: extra specs > bootstrap params > config defaults.

        Raises:
            SpecValidationError: On invalid extra specs or missing fields.
        """
        if not bootstrap.name:
            raise SpecValidationError("missing instance name")
        if not controller_id:
            raise SpecValidationError("missing controller ID")
        try:
            extra = ExtraSpecs(**(bootstrap.extra_specs or {}))
        except ValidationError as e:
            raise SpecValidationError(f"invalid extra specs: {e}") from e

        image = extra.image or bootstrap.image or config.image
        details = ImageDetails.from_urn(image)

        ephemeral = (
            extra.use_ephemeral_storage
            if extra.use_ephemeral_storage is not None
            else config.use_ephemeral_storage
        )
        accelerated = (
            extra.use_accelerated_networking
            if extra.use_accelerated_networking is not None
            else config.use_accelerated_networking
        )
        if extra.disk_size_gb is not None:
            disk_size = extra.disk_size_gb
        else:
            # 0 lets the resolver pick the VM size's ephemeral maximum
            disk_size = 0 if ephemeral else DEFAULT_DISK_SIZE_GB

        storage_type = extra.storage_account_type or DEFAULT_STORAGE_ACCOUNT_TYPE
        if ephemeral:
            storage_type = DEFAULT_STORAGE_ACCOUNT_TYPE

        cidr = (extra.virtual_network_cidr or config.virtual_network_cidr).strip()
        if not cidr:
            raise SpecValidationError("virtual network CIDR must not be empty")

        tags = {
            CONTROLLER_ID_TAG: controller_id,
            POOL_ID_TAG: bootstrap.pool_id,
            OS_TYPE_TAG: bootstrap.os_type,
            OS_ARCH_TAG: bootstrap.arch,
            OS_NAME_TAG: details.sku,
            OS_VERSION_TAG: details.version,
        }
        for key, value in extra.extra_tags.items():
            tags.setdefault(key, value)

        return cls(
            name=bootstrap.name,
            bootstrap=bootstrap,
            location=config.location,
            vm_size=extra.vm_size or bootstrap.flavor or config.vm_size,
            image=image,
            disk_size_gb=disk_size,
            storage_account_type=storage_type,
            use_ephemeral_storage=ephemeral,
            confidential=extra.confidential,
            virtual_network_cidr=cidr,
            allocate_public_ip=extra.allocate_public_ip,
            use_accelerated_networking=accelerated,
            open_inbound_ports=extra.open_inbound_ports,
            ssh_public_keys=[*bootstrap.ssh_keys, *extra.ssh_public_keys],
            tags=tags,
            custom_data=base64.b64encode(render_userdata(bootstrap).encode()).decode(),
        )

    # ── Derived values ────────────────────────────────────────────────

    def image_details(self) -> ImageDetails:
        return ImageDetails.from_urn(self.image)

    def security_rules(self) -> list[dict[str, Any]]:
        """Inbound NSG rules, one per protocol/port pair."""
        rules: list[dict[str, Any]] = []
        priority = _FIRST_RULE_PRIORITY
        for proto in sorted(self.open_inbound_ports):
            for port in sorted(set(self.open_inbound_ports[proto])):
                rules.append(
                    {
                        "name": f"inbound-{proto.lower()}-{port}",
                        "protocol": _SUPPORTED_PROTOCOLS[proto.lower()],
                        "direction": "Inbound",
                        "access": "Allow",
                        "priority": priority,
                        "source_address_prefix": "*",
                        "source_port_range": "*",
                        "destination_address_prefix": "*",
                        "destination_port_range": str(port),
                    }
                )
                priority += 1
        return rules
