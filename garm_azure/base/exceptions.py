"""
garm-provider-azure exception hierarchy.

Every error raised by the provider inherits from :class:`GarmProviderError`.
Cloud SDK failures are mapped to :class:`CloudClientError` (or its
:class:`NotFoundError` sub-class) by the resource client, and wrapped in
:class:`ProvisioningError` by the orchestrator so the caller can tell which
provisioning step failed.  A cancelled create raises
:class:`OperationCancelledError` once its resources are rolled back.
"""


# ── Base ──────────────────────────────────────────────────────────────
class GarmProviderError(Exception):
    """Root exception for all provider errors."""


# ── Validation ────────────────────────────────────────────────────────
class SpecValidationError(GarmProviderError):
    """The bootstrap request or its extra specs are invalid."""


class UnsupportedArchitectureError(SpecValidationError):
    """The requested OS architecture is not supported."""


# ── Capacity ──────────────────────────────────────────────────────────
class CapacityError(GarmProviderError):
    """The requested disk does not fit the VM size's ephemeral storage."""


# ── Provisioning ──────────────────────────────────────────────────────
class ProvisioningError(GarmProviderError):
    """A cloud operation failed while creating an instance.

    Attributes:
        step: Name of the provisioning step that failed
            (e.g. ``network_interface``).
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


# ── Translation ───────────────────────────────────────────────────────
class TranslationError(GarmProviderError):
    """A provider VM record could not be converted to an instance."""


# ── Cloud client ──────────────────────────────────────────────────────
class CloudClientError(GarmProviderError):
    """Base exception for Azure resource client operations."""


class NotFoundError(CloudClientError):
    """The Azure resource does not exist."""


# ── Cancellation ──────────────────────────────────────────────────────
class OperationCancelledError(GarmProviderError):
    """The caller cancelled the operation while it was in flight."""
