"""Provider factory.

Provides :func:`new_provider`, the single entry-point for building an
:class:`~garm_azure.azure.AzureProvider`: the config is validated once and
one resource client is created and shared by every call the provider serves.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from garm_azure.base.config import AzureConfig, load_config, validate_config
from garm_azure.azure.client import AzureCli
from garm_azure.azure.provider import AzureProvider


def new_provider(
    config: str | Path | dict[str, Any] | AzureConfig,
    controller_id: str,
    credential: Any | None = None,
) -> AzureProvider:
    """Create an Azure provider.

    Args:
        config: Path to a TOML config file, a raw config dict or a
            validated :class:`AzureConfig`.
        controller_id: ID of the host controller owning the runners.
        credential: Optional azure-identity credential overriding the one
            derived from the config.

    Returns:
        A ready-to-use provider.

    Raises:
        ValueError: If the controller ID is empty or the config file is missing.
        pydantic.ValidationError: If the config is invalid.
    """
    if not controller_id:
        raise ValueError("controller ID is required")

    if isinstance(config, AzureConfig):
        cfg = config
    elif isinstance(config, dict):
        cfg = validate_config(config)
    else:
        cfg = load_config(config)

    cli = AzureCli(cfg, credential=credential)
    return AzureProvider(controller_id, cli, cfg)
