"""Resource store backed by the official kubernetes client."""

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, V1Ingress, V1Secret, V1Service

from kita._logging import get_logger
from kita.exceptions import WatchClosedError
from kita.store.base import EventType, ResourceKind, ResourceStore, WatchEvent

logger = get_logger(__name__)

SERVICE_ACCOUNT_NAMESPACE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

# server-side timeout of one watch request; the stream is re-established after it
WATCH_TIMEOUT_SECONDS = 300


class _StreamEnd:
    def __init__(self, cause: BaseException | None):
        self.cause = cause


def load_client_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        logger.debug("Loaded kubeconfig")


def default_namespace() -> str:
    """Namespace of the pod's service account, or "default" outside a cluster."""
    if SERVICE_ACCOUNT_NAMESPACE.exists():
        return SERVICE_ACCOUNT_NAMESPACE.read_text().strip()
    return "default"


class KubernetesResourceStore(ResourceStore):
    """Resource store using CoreV1Api and NetworkingV1Api.

    The kubernetes client is blocking, so every call runs in a worker thread.
    Watch streams are pumped by a daemon thread into an asyncio queue.

    Args:
        namespace: Namespace holding the Ingresses, Secrets and Services.
        api_client: Optional preconfigured API client.
    """

    def __init__(self, namespace: str, api_client: client.ApiClient | None = None):
        self.namespace = namespace
        self._core_v1 = client.CoreV1Api(api_client)
        self._networking_v1 = client.NetworkingV1Api(api_client)

    @classmethod
    def from_environment(cls, namespace: str | None = None) -> "KubernetesResourceStore":
        load_client_config()
        return cls(namespace or default_namespace())

    async def list_ingresses(self, label_selector: str | None = None) -> list[V1Ingress]:
        result = await asyncio.to_thread(
            self._networking_v1.list_namespaced_ingress,
            self.namespace,
            **_selectors(label_selector=label_selector),
        )
        return list(result.items)

    async def create_or_replace_ingress(self, ingress: V1Ingress) -> V1Ingress:
        name = ingress.metadata.name
        try:
            return await asyncio.to_thread(
                self._networking_v1.create_namespaced_ingress, self.namespace, ingress
            )
        except ApiException as e:
            if e.status != 409:
                raise
        logger.debug("Replacing existing ingress", extra={"ingress": name})
        return await asyncio.to_thread(
            self._networking_v1.replace_namespaced_ingress, name, self.namespace, ingress
        )

    async def delete_ingress(self, name: str) -> None:
        try:
            await asyncio.to_thread(
                self._networking_v1.delete_namespaced_ingress, name, self.namespace
            )
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug("Ingress already gone", extra={"ingress": name})

    async def read_secret(self, name: str) -> V1Secret | None:
        try:
            return await asyncio.to_thread(
                self._core_v1.read_namespaced_secret, name, self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_or_replace_secret(self, secret: V1Secret) -> V1Secret:
        name = secret.metadata.name
        try:
            return await asyncio.to_thread(
                self._core_v1.create_namespaced_secret, self.namespace, secret
            )
        except ApiException as e:
            if e.status != 409:
                raise
        logger.debug("Replacing existing secret", extra={"secret": name})
        return await asyncio.to_thread(
            self._core_v1.replace_namespaced_secret, name, self.namespace, secret
        )

    async def list_services(self, label_selector: str | None = None) -> list[V1Service]:
        result = await asyncio.to_thread(
            self._core_v1.list_namespaced_service,
            self.namespace,
            **_selectors(label_selector=label_selector),
        )
        return list(result.items)

    def _list_function(self, kind: ResourceKind) -> Callable[..., Any]:
        return {
            ResourceKind.INGRESS: self._networking_v1.list_namespaced_ingress,
            ResourceKind.SECRET: self._core_v1.list_namespaced_secret,
            ResourceKind.SERVICE: self._core_v1.list_namespaced_service,
        }[kind]

    async def watch(
        self,
        kind: ResourceKind,
        label_selector: str | None = None,
        field_selector: str | None = None,
        timeout_seconds: int | None = None,
    ) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict[str, Any] | _StreamEnd] = asyncio.Queue()
        stream_watch = watch.Watch()
        list_function = self._list_function(kind)
        kwargs = _selectors(label_selector=label_selector, field_selector=field_selector)

        def pump() -> None:
            cause: BaseException | None = None
            try:
                for event in stream_watch.stream(
                    list_function,
                    self.namespace,
                    timeout_seconds=timeout_seconds or WATCH_TIMEOUT_SECONDS,
                    **kwargs,
                ):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as e:
                cause = e
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, _StreamEnd(cause))

        logger.debug("Starting watch", extra={"kind": str(kind), **kwargs})
        threading.Thread(target=pump, name=f"watch-{kind}", daemon=True).start()

        try:
            while True:
                item = await queue.get()
                if isinstance(item, _StreamEnd):
                    raise WatchClosedError(f"Watch of {kind} closed") from item.cause
                event_type = item["type"]
                if event_type == "ERROR":
                    raise WatchClosedError(f"Watch of {kind} reported an error: {item.get('raw_object')}")
                if event_type not in EventType.__members__:
                    # BOOKMARK and other informational events
                    continue
                yield WatchEvent(EventType(event_type), item["object"])
        finally:
            stream_watch.stop()


def _selectors(**selectors: str | None) -> dict[str, str]:
    return {name: value for name, value in selectors.items() if value is not None}
