"""Provider contract, wire models and core utilities.

Import them to type-hint your own code or to build another provider
against the same contract.
"""

from .provider import ExternalProviderBlueprint
from .params import Address, BootstrapInstance, ProviderInstance, SUPPORTED_ARCH


__all__ = [
    "Address",
    "BootstrapInstance",
    "ExternalProviderBlueprint",
    "ProviderInstance",
    "SUPPORTED_ARCH",
]
