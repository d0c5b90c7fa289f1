"""Certificate issuance for one TLS entry of an Ingress (RFC 8555 Section 7)."""

import asyncio
import base64
import time
from collections.abc import Callable
from typing import TypeVar

from kubernetes.client import V1Ingress, V1IngressTLS, V1ObjectMeta, V1Secret

from kita import labels
from kita._logging import get_logger, reconcile_extra
from kita.accounts import AccountManager
from kita.config import AuthFinalize
from kita.crypto import create_csr, encode_csr, generate_rsa_key, private_key_to_pem
from kita.exceptions import (
    AuthorizationFailedError,
    FinalizeError,
    PollingExhaustedError,
    ProtocolError,
    TransientPending,
    UnsupportedChallengeError,
)
from kita.models import (
    Authorization,
    AuthorizationStatus,
    CertificateBundle,
    Challenge,
    ChallengeType,
    FinalizeRequest,
    Identifier,
    NewOrderRequest,
    Order,
    OrderStatus,
)
from kita.solver import ChallengeSolver

logger = get_logger(__name__)

T = TypeVar("T")

CERTIFICATE_KEY_SIZE = 2048


def ingress_class_of(ingress: V1Ingress) -> str | None:
    return ingress.spec.ingress_class_name if ingress.spec else None


def http01_challenge(authorization: Authorization) -> Challenge:
    """Pick the http-01 challenge of an authorization.

    Raises:
        UnsupportedChallengeError: If the CA offered no http-01 challenge.
    """
    for challenge in authorization.challenges:
        if challenge.type == ChallengeType.HTTP_01:
            return challenge
    offered = [c.type for c in authorization.challenges]
    raise UnsupportedChallengeError(
        f"No http-01 challenge offered for {authorization.identifier.value}, got {offered}"
    )


def render_tls_secret(
    bundle: CertificateBundle,
    secret_name: str,
    issuer_id: str,
    ingress_name: str,
) -> V1Secret:
    """Build the kubernetes.io/tls Secret holding an issued certificate."""
    return V1Secret(
        api_version="v1",
        kind="Secret",
        type=labels.TLS_SECRET_TYPE,
        metadata=V1ObjectMeta(
            name=secret_name,
            labels={
                labels.ISSUER_LABEL: issuer_id,
                labels.FOR_INGRESS_LABEL: ingress_name,
            },
            annotations={labels.HOST_ANNOTATION: ",".join(bundle.hosts)},
        ),
        data={
            labels.TLS_CERT_KEY: _b64(bundle.certificate_chain_pem),
            labels.TLS_PRIVATE_KEY_KEY: _b64(bundle.private_key_pem),
        },
    )


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("ascii")).decode("ascii")


class CertificateOrchestrator:
    """Drives the order, authorizations, finalization and download for one TLS entry.

    Authorizations of an order are solved concurrently. If one fails the
    others are cancelled, and their solver routes are removed on the way
    out. A failed issuance is not resumed; the next reconciliation starts
    over with a new order.

    Args:
        accounts: Account manager providing account-scoped signed requests.
        solver: HTTP-01 challenge solver.
        polling: Attempts and delay used when polling authorizations and orders.
    """

    def __init__(self, accounts: AccountManager, solver: ChallengeSolver, polling: AuthFinalize):
        self._accounts = accounts
        self._solver = solver
        self._polling = polling

    async def issue(self, ingress: V1Ingress, tls: V1IngressTLS, issuer_id: str) -> CertificateBundle:
        """Obtain a certificate for the hosts of one TLS entry.

        Args:
            ingress: The Ingress owning the TLS entry.
            tls: The TLS entry; its hosts become the order identifiers.
            issuer_id: Issuer to order from.

        Returns:
            The certificate chain and its private key.

        Raises:
            AuthorizationFailedError: If an authorization did not become valid.
            UnsupportedChallengeError: If an authorization offered no http-01 challenge.
            SolverError: If the solver route could not be set up.
            ChallengeTimeoutError: If the CA never probed a challenge.
            PollingExhaustedError: If a resource stayed pending too long.
            FinalizeError: If the order did not become valid after finalization.
            AcmeProtocolError: If the CA rejected a request.
        """
        hosts = list(tls.hosts or [])
        started = time.monotonic()
        bundle = await self._issue(ingress, hosts, issuer_id)
        logger.info(
            "Certificate issued",
            extra={
                "issuer": issuer_id,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
                **reconcile_extra(),
            },
        )
        return bundle

    async def _issue(self, ingress: V1Ingress, hosts: list[str], issuer_id: str) -> CertificateBundle:
        order, order_url = await self._create_order(issuer_id, hosts)

        ingress_class = ingress_class_of(ingress)
        try:
            async with asyncio.TaskGroup() as group:
                for authorization_url in order.authorizations:
                    group.create_task(self._authorize(issuer_id, ingress_class, authorization_url))
        except ExceptionGroup as e:
            # surface the first failure; the rest were caused by cancellation or are alike
            raise e.exceptions[0]

        certificate_key = await asyncio.to_thread(generate_rsa_key, CERTIFICATE_KEY_SIZE)
        csr = create_csr(certificate_key, hosts)
        order = await self._finalize(issuer_id, order, order_url, encode_csr(csr))

        logger.debug("Downloading certificate", extra={"url": order.certificate, **reconcile_extra()})
        response = await self._accounts.request(issuer_id, order.certificate, "", str)
        if not response.body:
            raise ProtocolError(f"Certificate download from {order.certificate} was empty")

        return CertificateBundle(
            certificate_chain_pem=response.body,
            private_key_pem=private_key_to_pem(certificate_key),
            hosts=hosts,
        )

    async def _create_order(self, issuer_id: str, hosts: list[str]) -> tuple[Order, str]:
        new_order_url = self._accounts.directories.directory_for(issuer_id).new_order
        payload = NewOrderRequest(identifiers=[Identifier.dns(host) for host in hosts])

        logger.debug("Creating order", extra={"issuer": issuer_id, **reconcile_extra()})
        response = await self._accounts.request(
            issuer_id,
            new_order_url,
            payload.model_dump(by_alias=True, exclude_none=True, mode="json"),
            Order,
        )
        if response.body is None or not response.location:
            raise ProtocolError(f"New order response from {new_order_url} lacked a body or Location")

        logger.debug(
            "Created order",
            extra={"order_url": response.location, "status": response.body.status, **reconcile_extra()},
        )
        return response.body, response.location

    async def _authorize(self, issuer_id: str, ingress_class: str | None, url: str) -> None:
        response = await self._accounts.request(issuer_id, url, "", Authorization)
        authorization = response.body
        if authorization is None:
            raise ProtocolError(f"Authorization {url} had no body")

        host = authorization.identifier.value
        if authorization.status == AuthorizationStatus.VALID:
            logger.debug("Authorization already valid", extra={"host": host})
            return
        if authorization.status != AuthorizationStatus.PENDING:
            raise AuthorizationFailedError(url, authorization.status)

        challenge = http01_challenge(authorization)
        if not challenge.token:
            raise ProtocolError(f"http-01 challenge {challenge.url} has no token")
        key_authorization = await self._accounts.key_authorization_for(issuer_id, challenge.token)

        async with self._solver.solve(
            issuer_id, ingress_class, host, challenge.token, key_authorization
        ) as setup:
            logger.debug("Notifying CA that challenge is ready", extra={"host": host})
            await self._accounts.request(issuer_id, challenge.url, {}, Challenge)
            await setup.wait_for_probe()
            await self._poll(issuer_id, url, Authorization, lambda a: self._settle_authorization(url, a))

        logger.info("Authorization valid", extra={"host": host})

    @staticmethod
    def _settle_authorization(url: str, authorization: Authorization) -> Authorization:
        if authorization.status == AuthorizationStatus.PENDING:
            raise TransientPending(f"Authorization {url} still pending")
        if authorization.status == AuthorizationStatus.VALID:
            return authorization

        problem = next((c.error for c in authorization.challenges if c.error is not None), None)
        raise AuthorizationFailedError(url, authorization.status, problem)

    async def _finalize(self, issuer_id: str, order: Order, order_url: str, csr: str) -> Order:
        logger.debug("Finalizing order", extra={"order_url": order_url, **reconcile_extra()})
        response = await self._accounts.request(
            issuer_id, order.finalize, FinalizeRequest(csr=csr).model_dump(), Order
        )
        if response.body is None:
            raise ProtocolError(f"Finalize response from {order.finalize} had no body")

        order = response.body
        if order.status == OrderStatus.PROCESSING:
            order = await self._poll(issuer_id, order_url, Order, lambda o: self._settle_order(order_url, o))

        if order.status != OrderStatus.VALID or not order.certificate:
            detail = f" ({order.error.type}: {order.error.detail})" if order.error else ""
            raise FinalizeError(f"Order {order_url} was not valid after finalize, was {order.status}{detail}")
        return order

    @staticmethod
    def _settle_order(url: str, order: Order) -> Order:
        if order.status == OrderStatus.PROCESSING:
            raise TransientPending(f"Order {url} still processing")
        return order

    async def _poll(self, issuer_id: str, url: str, model: type[T], settle: Callable[[T], T]) -> T:
        """POST-as-GET a resource until ``settle`` stops raising TransientPending.

        At most ``max_attempts`` requests are made, with ``poll_delay``
        seconds between them.

        Raises:
            PollingExhaustedError: If the resource was still pending on the last attempt.
        """
        max_attempts = self._polling.max_attempts
        for attempt in range(1, max_attempts + 1):
            response = await self._accounts.request(issuer_id, url, "", model)
            if response.body is None:
                raise ProtocolError(f"Polling {url} returned no body")
            try:
                return settle(response.body)
            except TransientPending:
                logger.debug(
                    "Resource still pending",
                    extra={"url": url, "attempt": attempt, "max_attempts": max_attempts},
                )
            if attempt < max_attempts:
                await asyncio.sleep(self._polling.poll_delay)

        raise PollingExhaustedError(f"{url} still pending after {max_attempts} attempts")
