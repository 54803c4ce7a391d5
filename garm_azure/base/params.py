"""
Wire models exchanged with the orchestrating host.

:class:`BootstrapInstance` is what the host sends when it asks for a new
runner; :class:`ProviderInstance` is what the provider returns for created,
fetched and listed instances.  JSON field names follow the host's protocol,
so some fields carry aliases.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

OSType = Literal["linux", "windows"]
OSArch = Literal["amd64", "arm64", "arm", "i386"]
InstanceStatus = Literal["running", "stopped", "error", "unknown", "deleting"]
AddressType = Literal["public", "private"]

SUPPORTED_ARCH: OSArch = "amd64"


class RunnerApplicationDownload(BaseModel):
    """A runner tools archive the bootstrap payload can download."""

    model_config = ConfigDict(extra="ignore")

    os: str | None = None
    architecture: str | None = None
    download_url: str | None = None
    filename: str | None = None
    sha256_checksum: str | None = None
    temp_download_token: str | None = None


class BootstrapInstance(BaseModel):
    """Parameters of a runner the host wants created."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    tools: list[RunnerApplicationDownload] = Field(default_factory=list)
    repo_url: str = ""
    callback_url: str = Field(default="", alias="callback-url")
    metadata_url: str = Field(default="", alias="metadata-url")
    instance_token: str = Field(default="", alias="instance-token")
    ssh_keys: list[str] = Field(default_factory=list, alias="ssh-keys")
    extra_specs: dict[str, Any] | None = None
    github_runner_group: str = Field(default="", alias="github-runner-group")
    ca_cert_bundle: str | None = Field(default=None, alias="ca-cert-bundle")
    os_type: OSType = "linux"
    arch: OSArch = "amd64"
    flavor: str = ""
    image: str = ""
    labels: list[str] = Field(default_factory=list)
    pool_id: str = ""
    jit_config_enabled: bool = False


class Address(BaseModel):
    address: str
    type: AddressType


class ProviderInstance(BaseModel):
    """Normalized view of a runner VM."""

    model_config = ConfigDict(extra="ignore")

    provider_id: str
    name: str
    os_type: OSType | None = None
    os_arch: OSArch | None = None
    os_name: str = ""
    os_version: str = ""
    status: InstanceStatus = "unknown"
    addresses: list[Address] = Field(default_factory=list)


__all__ = [
    "Address",
    "AddressType",
    "BootstrapInstance",
    "InstanceStatus",
    "OSArch",
    "OSType",
    "ProviderInstance",
    "RunnerApplicationDownload",
    "SUPPORTED_ARCH",
]
