"""OS disk sizing for ephemeral storage."""

from __future__ import annotations

from garm_azure.base.exceptions import CapacityError
from garm_azure.azure.spec import RunnerSpec

# Confidential VMs reserve 1 GB of the local disk for the VM guest state.
CONFIDENTIAL_OVERHEAD_GB = 1


def resolve_cache_disk_size(spec: RunnerSpec, max_ephemeral_size_gb: int) -> int:
    """Return the OS disk size to request, in GB.

    Without ephemeral storage the requested size is returned as-is.  With
    ephemeral storage the disk must fit the VM size's local storage: an
    unset (``0``) request takes the whole of it, a larger request fails.

    Args:
        spec: The runner spec.
        max_ephemeral_size_gb: Largest ephemeral OS disk the VM size supports.

    Raises:
        CapacityError: If the requested size exceeds the usable maximum, or
            the usable maximum is below 1 GB.
    """
    if not spec.use_ephemeral_storage:
        return spec.disk_size_gb

    max_size = max_ephemeral_size_gb
    if spec.confidential:
        max_size -= CONFIDENTIAL_OVERHEAD_GB
    if max_size < 1:
        raise CapacityError(
            f"{spec.vm_size} has no usable local storage for an ephemeral OS disk "
            f"(maximum {max_size} GB)"
        )

    if spec.disk_size_gb == 0:
        return max_size
    if spec.disk_size_gb > max_size:
        raise CapacityError(
            f"maximum ephemeral disk size for {spec.vm_size} is {max_size} GB "
            f"(requested {spec.disk_size_gb})"
        )
    return spec.disk_size_gb
