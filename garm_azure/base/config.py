"""
Pydantic configuration models for the Azure provider.

Validates the provider config once at construction time instead of
silently passing bad values to the Azure SDK clients.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_VM_SIZE = "Standard_F2s"
DEFAULT_IMAGE = "Canonical:0001-com-ubuntu-server-jammy:22_04-lts-gen2:latest"
DEFAULT_VIRTUAL_NETWORK_CIDR = "10.10.0.0/24"


class Credentials(BaseModel):
    """Azure credentials.

    Values are resolved in order:
    1. Explicit values from the config file.
    2. Environment variables (AZURE_SUBSCRIPTION_ID, AZURE_TENANT_ID,
       AZURE_CLIENT_ID, AZURE_CLIENT_SECRET).
    3. If the service principal is still incomplete, :meth:`get_credential`
       falls back to ``DefaultAzureCredential`` (managed identity, az login, ...).
    """

    model_config = ConfigDict(extra="forbid")

    subscription_id: str | None = Field(default=None, description="Azure subscription ID")
    tenant_id: str | None = Field(default=None, description="Entra ID tenant ID")
    client_id: str | None = Field(default=None, description="Service principal client ID")
    client_secret: str | None = Field(default=None, description="Service principal secret")

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to environment variables for missing credentials."""
        if not isinstance(values, dict):
            return values
        values = dict(values)
        env_map = {
            "subscription_id": "AZURE_SUBSCRIPTION_ID",
            "tenant_id": "AZURE_TENANT_ID",
            "client_id": "AZURE_CLIENT_ID",
            "client_secret": "AZURE_CLIENT_SECRET",
        }
        for field, env_var in env_map.items():
            if not values.get(field):
                values[field] = os.environ.get(env_var)
        return values

    @model_validator(mode="after")
    def validate_subscription(self) -> Credentials:
        if not self.subscription_id:
            raise ValueError(
                "Azure subscription_id is required. Set it in the config file "
                "or via the AZURE_SUBSCRIPTION_ID environment variable."
            )
        return self

    @property
    def has_service_principal(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    def get_credential(self) -> Any:
        """Return an azure-identity credential for the management clients."""
        from azure.identity import ClientSecretCredential, DefaultAzureCredential  # lazy import

        if self.has_service_principal:
            return ClientSecretCredential(
                tenant_id=self.tenant_id,
                client_id=self.client_id,
                client_secret=self.client_secret,
            )
        return DefaultAzureCredential()


class AzureConfig(BaseModel):
    """Provider configuration, one per GARM provider entry."""

    model_config = ConfigDict(extra="forbid")

    location: str = Field(description="Azure region (e.g. 'westeurope')")
    use_ephemeral_storage: bool = Field(
        default=False, description="Place the OS disk on the VM's local storage"
    )
    use_accelerated_networking: bool = Field(
        default=False, description="Enable accelerated networking on the NIC"
    )
    virtual_network_cidr: str = Field(
        default=DEFAULT_VIRTUAL_NETWORK_CIDR,
        description="Address space of the per-instance virtual network",
    )
    vm_size: str = Field(default=DEFAULT_VM_SIZE, description="Default VM size")
    image: str = Field(
        default=DEFAULT_IMAGE, description="Default image URN (Publisher:Offer:Sku:Version)"
    )
    credentials: Credentials = Field(default_factory=dict, validate_default=True)

    @model_validator(mode="after")
    def validate_cidr(self) -> AzureConfig:
        if not self.virtual_network_cidr.strip():
            raise ValueError("virtual_network_cidr must not be empty")
        return self


def validate_config(config: dict[str, Any]) -> AzureConfig:
    """Validate and return a typed config model.

    Raises:
        pydantic.ValidationError: If the config is invalid.
    """
    return AzureConfig(**config)


def load_config(path: str | Path) -> AzureConfig:
    """Read a TOML provider config file and validate it.

    Raises:
        ValueError: If the file does not exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
        pydantic.ValidationError: If the config is invalid.
    """
    path = Path(path)
    if not path.is_file():
        raise ValueError(f"Config file not found: {path}")
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return validate_config(data)


__all__ = [
    "AzureConfig",
    "Credentials",
    "DEFAULT_IMAGE",
    "DEFAULT_VM_SIZE",
    "DEFAULT_VIRTUAL_NETWORK_CIDR",
    "load_config",
    "validate_config",
]
