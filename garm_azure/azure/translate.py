"""Azure VM -> ProviderInstance translation."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from garm_azure.base.exceptions import TranslationError
from garm_azure.base.params import InstanceStatus, ProviderInstance
from garm_azure.azure.spec import OS_ARCH_TAG, OS_NAME_TAG, OS_TYPE_TAG, OS_VERSION_TAG

_PROVISIONING_STATE_MAP: dict[str, InstanceStatus] = {
    "succeeded": "running",
    "creating": "running",
    "updating": "running",
    "failed": "error",
    "deleting": "deleting",
}

_POWER_STATE_MAP: dict[str, InstanceStatus] = {
    "PowerState/running": "running",
    "PowerState/starting": "running",
    "PowerState/stopped": "stopped",
    "PowerState/stopping": "stopped",
    "PowerState/deallocated": "stopped",
    "PowerState/deallocating": "stopped",
}


def _power_state(vm: Any) -> str | None:
    view = getattr(vm, "instance_view", None)
    for status in getattr(view, "statuses", None) or []:
        code = getattr(status, "code", None)
        if code and code.startswith("PowerState/"):
            return code
    return None


def vm_status(vm: Any) -> InstanceStatus:
    """Normalize provisioning and power state to an instance status."""
    state = (getattr(vm, "provisioning_state", None) or "").lower()
    status = _PROVISIONING_STATE_MAP.get(state, "unknown")
    if status in ("error", "deleting"):
        return status
    power = _power_state(vm)
    if power in _POWER_STATE_MAP:
        return _POWER_STATE_MAP[power]
    return status


def azure_instance_to_provider_instance(vm: Any) -> ProviderInstance:
    """Convert an Azure ``VirtualMachine`` to a :class:`ProviderInstance`.

    OS details come from the tags written when the VM was created.

    Raises:
        TranslationError: If the record is missing or malformed.
    """
    if vm is None:
        raise TranslationError("nil vm object in response")
    name = getattr(vm, "name", None)
    if not name:
        raise TranslationError("vm object has no name")
    tags = getattr(vm, "tags", None) or {}
    try:
        return ProviderInstance(
            provider_id=name,
            name=name,
            os_type=tags.get(OS_TYPE_TAG),
            os_arch=tags.get(OS_ARCH_TAG),
            os_name=tags.get(OS_NAME_TAG, ""),
            os_version=tags.get(OS_VERSION_TAG, ""),
            status=vm_status(vm),
        )
    except ValidationError as e:
        raise TranslationError(f"failed to convert vm {name}: {e}") from e
