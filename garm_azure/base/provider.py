"""External provider blueprint."""

import threading
from abc import ABC, abstractmethod

from .params import BootstrapInstance, ProviderInstance


class ExternalProviderBlueprint(ABC):
    """Abstract lifecycle contract the orchestrating host calls into.

    Instance identifiers are the names the host chose at creation time.
    """

    @abstractmethod
    def create_instance(
        self, bootstrap: BootstrapInstance, cancel: threading.Event | None = None
    ) -> ProviderInstance:
        """Provision a new runner instance and return its details.

        Args:
            bootstrap: Runner parameters sent by the host.
            cancel: Set by the caller to abandon the creation; whatever was
                already created is removed.

        Returns:
            The created instance.
        """

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None:
        """Delete an instance. Deleting a missing instance succeeds."""

    @abstractmethod
    def get_instance(self, instance_id: str) -> ProviderInstance:
        """Return details for a single instance."""

    @abstractmethod
    def list_instances(self, pool_id: str) -> list[ProviderInstance]:
        """List all instances that belong to a pool."""

    @abstractmethod
    def remove_all_instances(self) -> None:
        """Remove every instance created by this provider."""

    @abstractmethod
    def stop(self, instance_id: str, force: bool = False) -> None:
        """Stop a running instance."""

    @abstractmethod
    def start(self, instance_id: str) -> None:
        """Start a stopped instance."""
