"""garm-provider-azure: Azure external provider for GARM runners.

Entry point for the library. Import :func:`new_provider` to build a
provider from a config file::

    from garm_azure import new_provider

    provider = new_provider("/etc/garm/azure.toml", controller_id)
    instance = provider.create_instance(bootstrap)
"""

__version__ = "0.1.0"

from .base import (  # noqa: E402
    Address,
    BootstrapInstance,
    ExternalProviderBlueprint,
    ProviderInstance,
)
from .factory import new_provider  # noqa: E402

__all__ = [
    "Address",
    "BootstrapInstance",
    "ExternalProviderBlueprint",
    "ProviderInstance",
    "new_provider",
    "__version__",
]
