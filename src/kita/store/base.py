"""Abstract base class for the cluster resource store."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kubernetes.client import V1Ingress, V1Secret, V1Service


class ResourceKind(StrEnum):
    INGRESS = "Ingress"
    SECRET = "Secret"
    SERVICE = "Service"


class EventType(StrEnum):
    """Watch event types delivered to the controller."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    object: Any


class ResourceStore(ABC):
    """Abstract interface to the cluster's Ingresses, Secrets and Services.

    All resources live in the single namespace the store was created for.
    Objects are the ``kubernetes.client`` models (V1Ingress, V1Secret, ...).
    """

    @abstractmethod
    async def list_ingresses(self, label_selector: str | None = None) -> list[V1Ingress]:
        """List Ingresses matching a label selector."""
        ...

    @abstractmethod
    async def create_or_replace_ingress(self, ingress: V1Ingress) -> V1Ingress:
        """Create an Ingress, replacing any existing one with the same name."""
        ...

    @abstractmethod
    async def delete_ingress(self, name: str) -> None:
        """Delete an Ingress; a missing Ingress is not an error."""
        ...

    @abstractmethod
    async def read_secret(self, name: str) -> V1Secret | None:
        """Get a Secret by name.

        Returns:
            The Secret, or None if it does not exist.
        """
        ...

    @abstractmethod
    async def create_or_replace_secret(self, secret: V1Secret) -> V1Secret:
        """Create a Secret, replacing any existing one with the same name."""
        ...

    @abstractmethod
    async def list_services(self, label_selector: str | None = None) -> list[V1Service]:
        """List Services matching a label selector."""
        ...

    @abstractmethod
    def watch(
        self,
        kind: ResourceKind,
        label_selector: str | None = None,
        field_selector: str | None = None,
        timeout_seconds: int | None = None,
    ) -> AsyncIterator[WatchEvent]:
        """Watch resources of a kind.

        The iterator raises WatchClosedError when the underlying stream ends;
        callers re-establish the watch if they still need it.

        ``timeout_seconds`` bounds how long the server keeps the stream open;
        the store picks its own default when it is None.
        """
        ...
