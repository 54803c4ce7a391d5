"""Azure provider implementation."""

from .client import AzureCli
from .provider import AzureProvider

__all__ = [
    "AzureCli",
    "AzureProvider",
]
