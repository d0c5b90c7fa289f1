"""Cluster resource store used by the controller and the solver."""

from kita.store.base import EventType, ResourceKind, ResourceStore, WatchEvent
from kita.store.kubernetes import KubernetesResourceStore

__all__ = ["EventType", "KubernetesResourceStore", "ResourceKind", "ResourceStore", "WatchEvent"]
