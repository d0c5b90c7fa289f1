"""HTTP-01 challenge solving through a temporary solver Ingress.

A solver Ingress routes ``/.well-known/acme-challenge/<token>`` for one host
to the shared responder Service (located by its role label). The route lives
only for the duration of :meth:`ChallengeSolver.solve`.

States of one attempt::

    PREPARING -> ROUTED -> WAITING_FOR_PROBE -> COMPLETED
                                             \\-> ABANDONED (any error)
"""

import asyncio
import hashlib
import math
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum

from kubernetes.client import (
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1Service,
    V1ServiceBackendPort,
)

from kita import labels
from kita._logging import get_logger
from kita.exceptions import ChallengeTimeoutError, SolverError
from kita.responder import ChallengeResponder, PreparedChallenge
from kita.store.base import EventType, ResourceKind, ResourceStore

logger = get_logger(__name__)

MAX_NAME_LENGTH = 253
TOKEN_DIGEST_LENGTH = 8


class SolverState(StrEnum):
    PREPARING = "preparing"
    ROUTED = "routed"
    WAITING_FOR_PROBE = "waiting-for-probe"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class SolverSetup:
    """A live solver route for one token."""

    host: str
    token: str
    prepared: PreparedChallenge
    probe_timeout: float
    ingress_name: str | None = None
    state: SolverState = SolverState.PREPARING

    async def wait_for_probe(self) -> None:
        """Wait until the CA fetched the challenge response.

        Raises:
            ChallengeTimeoutError: If no probe arrived within the bound.
        """
        self.state = SolverState.WAITING_FOR_PROBE
        try:
            async with asyncio.timeout(self.probe_timeout):
                await self.prepared.completed
        except TimeoutError as e:
            raise ChallengeTimeoutError(
                f"Challenge for host {self.host} was not probed within {self.probe_timeout}s"
            ) from e
        logger.debug("Challenge response completed", extra={"host": self.host, "token": self.token})


def build_ingress_name(service_name: str, host: str, token: str) -> str:
    """Name the solver Ingress of one challenge attempt.

    The token digest keeps attempts for the same host apart. Long names are
    cut before the digest to stay within the object name limit.
    """
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:TOKEN_DIGEST_LENGTH]
    prefix = f"{service_name}-solver-{host.replace('.', '-').lower()}"
    prefix = prefix[: MAX_NAME_LENGTH - len(digest) - 1].rstrip("-.")
    return f"{prefix}-{digest}"


def backend_port_for(service: V1Service) -> V1ServiceBackendPort:
    """Pick the port of the responder Service to route to.

    A single port is used as is; with several, the one named "http" is used.

    Raises:
        SolverError: If no suitable port exists.
    """
    service_name = service.metadata.name
    ports = service.spec.ports if service.spec else None

    if not ports:
        raise SolverError(f"Missing service ports on service {service_name}")
    if len(ports) == 1:
        port = ports[0]
    else:
        port = next((p for p in ports if p.name == labels.SOLVER_SERVICE_PORT_NAME), None)
        if port is None:
            raise SolverError(
                f"Unable to pick out service port named {labels.SOLVER_SERVICE_PORT_NAME} "
                f"from service {service_name}"
            )

    if port.name:
        return V1ServiceBackendPort(name=port.name)
    return V1ServiceBackendPort(number=port.port)


def build_solver_ingress(
    name: str,
    issuer_id: str,
    solver_role: str,
    ingress_class_name: str | None,
    host: str,
    path: str,
    service: V1Service,
) -> V1Ingress:
    """Build the temporary Ingress routing one challenge path to the responder."""
    backend = V1IngressBackend(
        service=V1IngressServiceBackend(
            name=service.metadata.name,
            port=backend_port_for(service),
        )
    )
    return V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=V1ObjectMeta(
            name=name,
            labels={
                labels.ROLE_LABEL: solver_role,
                labels.ISSUER_LABEL: issuer_id,
            },
            annotations={labels.HOST_ANNOTATION: host},
        ),
        spec=V1IngressSpec(
            ingress_class_name=ingress_class_name,
            rules=[
                V1IngressRule(
                    host=host,
                    http=V1HTTPIngressRuleValue(
                        paths=[V1HTTPIngressPath(path=path, path_type="Exact", backend=backend)]
                    ),
                )
            ],
        ),
    )


def has_load_balancer(ingress: V1Ingress) -> bool:
    status = ingress.status
    if status is None or status.load_balancer is None:
        return False
    return bool(status.load_balancer.ingress)


class ChallengeSolver:
    """Stands up and tears down solver routes for HTTP-01 challenges.

    Args:
        store: Cluster resource store.
        responder: Registry answering the CA's probes.
        solver_role: Role label value of the responder Service.
        probe_timeout: Seconds to wait for the CA to probe the challenge path.
        ready_timeout: Seconds to wait for the responder Service and for the
            solver Ingress to get a load balancer address.
    """

    def __init__(
        self,
        store: ResourceStore,
        responder: ChallengeResponder,
        solver_role: str,
        probe_timeout: float,
        ready_timeout: float,
    ):
        self._store = store
        self._responder = responder
        self.solver_role = solver_role
        self.probe_timeout = probe_timeout
        self.ready_timeout = ready_timeout

    @property
    def _watch_timeout(self) -> int:
        # server side end for streams left behind by asyncio.timeout
        return max(1, math.ceil(self.ready_timeout))

    @asynccontextmanager
    async def solve(
        self,
        issuer_id: str,
        ingress_class_name: str | None,
        host: str,
        token: str,
        key_authorization: str,
    ) -> AsyncIterator[SolverSetup]:
        """Route the challenge path of ``host`` to the responder.

        The route and the token registration are removed on exit, whether
        the body succeeded, failed or was cancelled.

        Yields:
            The live setup once the route is externally reachable.
        """
        prepared = self._responder.register(token, key_authorization)
        setup = SolverSetup(host=host, token=token, prepared=prepared, probe_timeout=self.probe_timeout)
        try:
            service = await self._locate_service()
            setup.ingress_name = build_ingress_name(service.metadata.name, host, token)
            ingress = build_solver_ingress(
                setup.ingress_name,
                issuer_id,
                self.solver_role,
                ingress_class_name,
                host,
                prepared.path,
                service,
            )
            logger.debug(
                "Creating solver ingress",
                extra={"ingress": setup.ingress_name, "host": host, "ingress_class": ingress_class_name},
            )
            await self._store.create_or_replace_ingress(ingress)
            await self._wait_until_ready(setup.ingress_name)
            setup.state = SolverState.ROUTED

            yield setup

            setup.state = SolverState.COMPLETED
        except BaseException:
            setup.state = SolverState.ABANDONED
            raise
        finally:
            await self._cleanup(setup)

    async def _cleanup(self, setup: SolverSetup) -> None:
        if setup.ingress_name is not None:
            logger.debug("Deleting solver ingress", extra={"ingress": setup.ingress_name})
            try:
                await self._store.delete_ingress(setup.ingress_name)
            except Exception:
                logger.exception(
                    "Failed to delete solver ingress", extra={"ingress": setup.ingress_name}
                )
        self._responder.unregister(setup.token)

    async def _locate_service(self) -> V1Service:
        selector = labels.solver_service_selector(self.solver_role)
        logger.debug("Locating solver service", extra={"label_selector": selector})

        services = await self._store.list_services(selector)
        if services:
            return services[0]

        try:
            async with asyncio.timeout(self.ready_timeout):
                async with aclosing(
                    self._store.watch(
                        ResourceKind.SERVICE,
                        label_selector=selector,
                        timeout_seconds=self._watch_timeout,
                    )
                ) as events:
                    async for event in events:
                        if event.type in (EventType.ADDED, EventType.MODIFIED):
                            logger.debug("Located solver service", extra={"service": event.object.metadata.name})
                            return event.object
        except TimeoutError as e:
            raise SolverError(f"No solver service with label {selector} appeared") from e
        raise SolverError(f"Watch for solver service with label {selector} ended")

    async def _wait_until_ready(self, name: str) -> None:
        try:
            async with asyncio.timeout(self.ready_timeout):
                async with aclosing(
                    self._store.watch(
                        ResourceKind.INGRESS,
                        field_selector=f"metadata.name={name}",
                        timeout_seconds=self._watch_timeout,
                    )
                ) as events:
                    async for event in events:
                        if event.type != EventType.DELETED and has_load_balancer(event.object):
                            logger.debug("Solver ingress is ready", extra={"ingress": name})
                            return
        except TimeoutError as e:
            raise SolverError(f"Solver ingress {name} got no load balancer address in time") from e
        raise SolverError(f"Watch of solver ingress {name} ended")
