"""Pytest fixtures for the kita test suite."""

import asyncio
import base64
import itertools
import json
import logging
import logging.handlers
import os
import re
from collections import Counter
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from kubernetes.client import (
    V1Ingress,
    V1IngressLoadBalancerIngress,
    V1IngressLoadBalancerStatus,
    V1IngressSpec,
    V1IngressStatus,
    V1IngressTLS,
    V1ObjectMeta,
    V1Secret,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from kita import labels
from kita.accounts import AccountManager
from kita.client import AcmeClient
from kita.config import AuthFinalize, Issuer, Settings
from kita.directory import DirectoryCache
from kita.exceptions import WatchClosedError
from kita.orchestrator import CertificateOrchestrator
from kita.responder import ChallengeResponder
from kita.solver import ChallengeSolver
from kita.store.base import EventType, ResourceKind, ResourceStore, WatchEvent

# Default URLs for local pebble setup
PEBBLE_DIRECTORY_URL = os.environ.get("PEBBLE_DIRECTORY_URL", "https://localhost:14000/dir")

ACME_BASE_URL = "https://acme.test"
DIRECTORY_URL = f"{ACME_BASE_URL}/directory"
ISSUER_ID = "staging"
SOLVER_SERVICE_NAME = "kita-responder"


# =============================================================================
# Logging
# =============================================================================


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name.

        Args:
            level: Filter by log level (e.g., logging.INFO).
            name: Filter by logger name prefix (e.g., "kita.controller").

        Returns:
            List of matching log records.
        """
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the kita package during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Stored certificate" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=1000)
    handler.setLevel(logging.DEBUG)

    kita_logger = logging.getLogger("kita")
    original_level = kita_logger.level
    kita_logger.setLevel(logging.DEBUG)
    kita_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        kita_logger.removeHandler(handler)
        kita_logger.setLevel(original_level)
        handler.close()


# =============================================================================
# Kubernetes objects
# =============================================================================

_SELECTOR_TERMS = re.compile(r",(?![^(]*\))")


def selector_matches(values: dict[str, str], selector: str | None) -> bool:
    """Evaluate the subset of label selector syntax the controller uses."""
    if not selector:
        return True
    for term in _SELECTOR_TERMS.split(selector):
        term = term.strip()
        if " notin " in term:
            key, _, rest = term.partition(" notin ")
            excluded = {v.strip() for v in rest.strip("() ").split(",")}
            if values.get(key.strip()) in excluded:
                return False
        elif "=" in term:
            key, _, value = term.partition("=")
            if values.get(key) != value:
                return False
        elif term not in values:
            return False
    return True


def _matches(obj: Any, label_selector: str | None, field_selector: str | None) -> bool:
    if not selector_matches(obj.metadata.labels or {}, label_selector):
        return False
    return selector_matches({"metadata.name": obj.metadata.name}, field_selector)


class FakeResourceStore(ResourceStore):
    """In-memory resource store publishing watch events like the API server.

    A new watch first delivers ADDED for every matching object, then every
    later change. ``close_watches`` ends all open streams.

    Args:
        auto_load_balancer: Give every created Ingress a load balancer address.
    """

    def __init__(self, auto_load_balancer: bool = True) -> None:
        self.auto_load_balancer = auto_load_balancer
        self.ingresses: dict[str, V1Ingress] = {}
        self.secrets: dict[str, V1Secret] = {}
        self.services: dict[str, V1Service] = {}
        self.created_ingresses: list[V1Ingress] = []
        self.deleted_ingresses: list[str] = []
        self.written_secrets: list[V1Secret] = []
        self.watch_timeouts: list[tuple[ResourceKind, int | None]] = []
        self._watchers: list[tuple[ResourceKind, str | None, str | None, asyncio.Queue]] = []

    def _objects(self, kind: ResourceKind) -> dict[str, Any]:
        return {
            ResourceKind.INGRESS: self.ingresses,
            ResourceKind.SECRET: self.secrets,
            ResourceKind.SERVICE: self.services,
        }[kind]

    def _put(self, kind: ResourceKind, obj: Any) -> None:
        objects = self._objects(kind)
        event_type = EventType.MODIFIED if obj.metadata.name in objects else EventType.ADDED
        objects[obj.metadata.name] = obj
        self._publish(kind, event_type, obj)

    def _remove(self, kind: ResourceKind, name: str) -> None:
        obj = self._objects(kind).pop(name, None)
        if obj is not None:
            self._publish(kind, EventType.DELETED, obj)

    def _publish(self, kind: ResourceKind, event_type: EventType, obj: Any) -> None:
        for watched_kind, label_selector, field_selector, queue in list(self._watchers):
            if watched_kind == kind and _matches(obj, label_selector, field_selector):
                queue.put_nowait(WatchEvent(event_type, obj))

    # Test helpers

    def add_ingress(self, ingress: V1Ingress) -> None:
        self._put(ResourceKind.INGRESS, ingress)

    def add_secret(self, secret: V1Secret) -> None:
        self._put(ResourceKind.SECRET, secret)

    def remove_secret(self, name: str) -> None:
        self._remove(ResourceKind.SECRET, name)

    def add_service(self, service: V1Service) -> None:
        self._put(ResourceKind.SERVICE, service)

    def close_watches(self) -> None:
        for *_, queue in self._watchers:
            queue.put_nowait(None)

    @property
    def watch_count(self) -> int:
        return len(self._watchers)

    # ResourceStore

    async def list_ingresses(self, label_selector: str | None = None) -> list[V1Ingress]:
        return [i for i in self.ingresses.values() if _matches(i, label_selector, None)]

    async def create_or_replace_ingress(self, ingress: V1Ingress) -> V1Ingress:
        if self.auto_load_balancer:
            ingress.status = V1IngressStatus(
                load_balancer=V1IngressLoadBalancerStatus(
                    ingress=[V1IngressLoadBalancerIngress(ip="10.0.0.1")]
                )
            )
        self.created_ingresses.append(ingress)
        self._put(ResourceKind.INGRESS, ingress)
        return ingress

    async def delete_ingress(self, name: str) -> None:
        self.deleted_ingresses.append(name)
        self._remove(ResourceKind.INGRESS, name)

    async def read_secret(self, name: str) -> V1Secret | None:
        return self.secrets.get(name)

    async def create_or_replace_secret(self, secret: V1Secret) -> V1Secret:
        self.written_secrets.append(secret)
        self._put(ResourceKind.SECRET, secret)
        return secret

    async def list_services(self, label_selector: str | None = None) -> list[V1Service]:
        return [s for s in self.services.values() if _matches(s, label_selector, None)]

    async def watch(
        self,
        kind: ResourceKind,
        label_selector: str | None = None,
        field_selector: str | None = None,
        timeout_seconds: int | None = None,
    ):
        queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self.watch_timeouts.append((kind, timeout_seconds))
        entry = (kind, label_selector, field_selector, queue)
        self._watchers.append(entry)
        try:
            for obj in list(self._objects(kind).values()):
                if _matches(obj, label_selector, field_selector):
                    yield WatchEvent(EventType.ADDED, obj)
            while True:
                event = await queue.get()
                if event is None:
                    raise WatchClosedError(f"Watch of {kind} closed")
                yield event
        finally:
            self._watchers.remove(entry)


def make_ingress(
    name: str = "web",
    secret_name: str = "web-tls",
    hosts: tuple[str, ...] = ("a.example.com",),
    issuer_id: str | None = ISSUER_ID,
    ingress_class_name: str | None = "nginx",
    tls: list[V1IngressTLS] | None = None,
) -> V1Ingress:
    ingress_labels = {labels.ISSUER_LABEL: issuer_id} if issuer_id else {}
    return V1Ingress(
        metadata=V1ObjectMeta(name=name, labels=ingress_labels),
        spec=V1IngressSpec(
            ingress_class_name=ingress_class_name,
            tls=tls if tls is not None else [V1IngressTLS(secret_name=secret_name, hosts=list(hosts))],
        ),
    )


def make_solver_service(
    name: str = SOLVER_SERVICE_NAME,
    ports: list[V1ServicePort] | None = None,
    role: str = "solver",
) -> V1Service:
    return V1Service(
        metadata=V1ObjectMeta(name=name, labels={labels.ROLE_LABEL: role}),
        spec=V1ServiceSpec(ports=ports or [V1ServicePort(name="http", port=80)]),
    )


def make_certificate_pem(
    hosts: list[str],
    not_before: datetime,
    not_after: datetime,
) -> str:
    """Self-signed certificate valid for the given window."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hosts[0])])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(host) for host in hosts]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


def make_tls_secret(
    name: str = "web-tls",
    certificate_pem: str | None = None,
    issuer_id: str = ISSUER_ID,
    ingress_name: str = "web",
) -> V1Secret:
    data = {}
    if certificate_pem is not None:
        data[labels.TLS_CERT_KEY] = base64.b64encode(certificate_pem.encode("ascii")).decode("ascii")
    return V1Secret(
        metadata=V1ObjectMeta(
            name=name,
            labels={labels.ISSUER_LABEL: issuer_id, labels.FOR_INGRESS_LABEL: ingress_name},
        ),
        type=labels.TLS_SECRET_TYPE,
        data=data,
    )


@pytest.fixture
def ingress_factory() -> Callable[..., V1Ingress]:
    return make_ingress


@pytest.fixture
def service_factory() -> Callable[..., V1Service]:
    return make_solver_service


@pytest.fixture
def certificate_factory() -> Callable[..., str]:
    return make_certificate_pem


@pytest.fixture
def secret_factory() -> Callable[..., V1Secret]:
    return make_tls_secret


@pytest.fixture
def store() -> FakeResourceStore:
    """Store already holding the challenge responder service."""
    fake = FakeResourceStore()
    fake.add_service(make_solver_service())
    return fake


# =============================================================================
# ACME server
# =============================================================================


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class FakeAcmeServer:
    """ACME server with one authorization per ordered host, served through respx.

    Every POST is recorded as ``(url, protected_header, payload)``. Host ``n``
    of the order (counting from 1) gets ``authz/n``, ``chall/n`` and
    ``token-n``. Successive polls of an authorization return
    ``authorization_polls`` in order, or the host's entry in
    ``authorization_polls_by_host``; the last entry repeats once the list is
    used up. Triggering the challenge of a host in ``unprobed_hosts`` does not
    answer the responder.

    Args:
        router: Active respx router.
        base_url: Base URL of the fake server.
    """

    def __init__(self, router: respx.MockRouter, base_url: str = ACME_BASE_URL) -> None:
        self.router = router
        self.base_url = base_url
        self.directory_url = f"{base_url}/directory"
        self.new_nonce_url = f"{base_url}/new-nonce"
        self.new_account_url = f"{base_url}/new-account"
        self.new_order_url = f"{base_url}/new-order"
        self.account_url = f"{base_url}/acct/1"
        self.order_url = f"{base_url}/order/1"
        self.authorization_url = self.authorization_url_for(1)
        self.challenge_url = self.challenge_url_for(1)
        self.finalize_url = f"{base_url}/order/1/finalize"
        self.certificate_url = f"{base_url}/cert/1"

        self.token = self.token_for(1)
        self.hosts: list[str] = []
        self.initial_authorization_status = "pending"
        self.authorization_polls: list[str] = ["valid"]
        self.authorization_polls_by_host: dict[str, list[str]] = {}
        self.unprobed_hosts: set[str] = set()
        self.finalize_status = "valid"
        self.order_polls: list[str] = ["valid"]
        self.responder: ChallengeResponder | None = None

        self.requests: list[tuple[str, dict[str, Any], Any]] = []
        self.issued_nonces: list[str] = []
        self._nonces = itertools.count(1)
        self._authorization_fetches: Counter[int] = Counter()
        self._order_fetches = 0

        router.get(self.directory_url).mock(side_effect=self._directory)
        router.head(self.new_nonce_url).mock(side_effect=self._new_nonce)
        router.post(self.new_account_url).mock(side_effect=self._new_account)
        router.post(self.new_order_url).mock(side_effect=self._new_order)
        router.post(url__regex=rf"^{re.escape(base_url)}/authz/\d+$").mock(side_effect=self._authorization)
        router.post(url__regex=rf"^{re.escape(base_url)}/chall/\d+$").mock(side_effect=self._challenge)
        router.post(self.finalize_url).mock(side_effect=self._finalize)
        router.post(self.order_url).mock(side_effect=self._order)
        router.post(self.certificate_url).mock(side_effect=self._certificate)

    # Inspection helpers

    def requests_to(self, url: str) -> list[tuple[str, dict[str, Any], Any]]:
        return [r for r in self.requests if r[0] == url]

    @property
    def used_nonces(self) -> list[str]:
        return [protected["nonce"] for _, protected, _ in self.requests]

    def authorization_url_for(self, index: int) -> str:
        return f"{self.base_url}/authz/{index}"

    def challenge_url_for(self, index: int) -> str:
        return f"{self.base_url}/chall/{index}"

    def token_for(self, index: int) -> str:
        return f"token-{index}"

    def host_for(self, index: int) -> str:
        return self.hosts[index - 1] if index <= len(self.hosts) else "a.example.com"

    @property
    def authorization_poll_count(self) -> int:
        # the first fetch of each authorization only discovers the challenge
        return sum(max(0, fetches - 1) for fetches in self._authorization_fetches.values())

    @staticmethod
    def _index_of(request: httpx.Request) -> int:
        return int(request.url.path.rsplit("/", 1)[1])

    # Handlers

    def _nonce_headers(self) -> dict[str, str]:
        nonce = f"nonce-{next(self._nonces)}"
        self.issued_nonces.append(nonce)
        return {"Replay-Nonce": nonce}

    def _record(self, request: httpx.Request) -> Any:
        body = json.loads(request.content)
        protected = json.loads(_b64decode(body["protected"]))
        payload = json.loads(_b64decode(body["payload"])) if body["payload"] else ""
        self.requests.append((str(request.url), protected, payload))
        return payload

    def _directory(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "newNonce": self.new_nonce_url,
                "newAccount": self.new_account_url,
                "newOrder": self.new_order_url,
                "revokeCert": f"{self.base_url}/revoke-cert",
                "keyChange": f"{self.base_url}/key-change",
            },
        )

    def _new_nonce(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=self._nonce_headers())

    def _new_account(self, request: httpx.Request) -> httpx.Response:
        payload = self._record(request)
        return httpx.Response(
            201,
            json={"status": "valid", "contact": payload["contact"]},
            headers={"Location": self.account_url, **self._nonce_headers()},
        )

    def _order_body(self, status: str) -> dict[str, Any]:
        body = {
            "status": status,
            "identifiers": [{"type": "dns", "value": host} for host in self.hosts],
            "authorizations": [self.authorization_url_for(i) for i in range(1, max(len(self.hosts), 1) + 1)],
            "finalize": self.finalize_url,
        }
        if status == "valid":
            body["certificate"] = self.certificate_url
        return body

    def _new_order(self, request: httpx.Request) -> httpx.Response:
        payload = self._record(request)
        self.hosts = [identifier["value"] for identifier in payload["identifiers"]]
        return httpx.Response(
            201,
            json=self._order_body("pending"),
            headers={"Location": self.order_url, **self._nonce_headers()},
        )

    def _authorization(self, request: httpx.Request) -> httpx.Response:
        self._record(request)
        index = self._index_of(request)
        host = self.host_for(index)
        fetches = self._authorization_fetches[index]
        if fetches == 0:
            status = self.initial_authorization_status
        else:
            polls = self.authorization_polls_by_host.get(host, self.authorization_polls)
            status = polls[min(fetches - 1, len(polls) - 1)]
        self._authorization_fetches[index] += 1

        challenge: dict[str, Any] = {
            "type": "http-01",
            "url": self.challenge_url_for(index),
            "status": status if status in ("pending", "valid") else "invalid",
            "token": self.token_for(index),
        }
        if status == "invalid":
            challenge["error"] = {
                "type": "urn:ietf:params:acme:error:unauthorized",
                "detail": f"Invalid response from http://{host}",
            }
        return httpx.Response(
            200,
            json={
                "status": status,
                "identifier": {"type": "dns", "value": host},
                "challenges": [challenge],
            },
            headers=self._nonce_headers(),
        )

    def _challenge(self, request: httpx.Request) -> httpx.Response:
        self._record(request)
        index = self._index_of(request)
        token = self.token_for(index)
        # the CA validates by fetching the challenge path
        if self.responder is not None and self.host_for(index) not in self.unprobed_hosts:
            self.responder.respond(token)
        return httpx.Response(
            200,
            json={"type": "http-01", "url": self.challenge_url_for(index), "status": "processing", "token": token},
            headers=self._nonce_headers(),
        )

    def _finalize(self, request: httpx.Request) -> httpx.Response:
        self._record(request)
        return httpx.Response(200, json=self._order_body(self.finalize_status), headers=self._nonce_headers())

    def _order(self, request: httpx.Request) -> httpx.Response:
        self._record(request)
        index = min(self._order_fetches, len(self.order_polls) - 1)
        self._order_fetches += 1
        return httpx.Response(
            200, json=self._order_body(self.order_polls[index]), headers=self._nonce_headers()
        )

    def _certificate(self, request: httpx.Request) -> httpx.Response:
        self._record(request)
        now = datetime.now(timezone.utc)
        hosts = self.hosts or ["a.example.com"]
        chain = make_certificate_pem(hosts, now - timedelta(minutes=1), now + timedelta(days=90))
        return httpx.Response(
            200,
            text=chain,
            headers={"Content-Type": "application/pem-certificate-chain", **self._nonce_headers()},
        )


@pytest.fixture
def responder() -> ChallengeResponder:
    return ChallengeResponder()


@pytest.fixture
def acme(responder: ChallengeResponder) -> Generator[FakeAcmeServer]:
    """Fake ACME server that probes the responder when a challenge is triggered."""
    with respx.mock(assert_all_called=False) as router:
        server = FakeAcmeServer(router)
        server.responder = responder
        yield server


@pytest.fixture
def settings() -> Settings:
    return Settings(
        issuers={
            ISSUER_ID: Issuer(
                directory_url=DIRECTORY_URL,
                emails=["admin@example.com"],
                terms_of_service_agreed=True,
            )
        },
        auth_finalize=AuthFinalize(max_attempts=3, poll_delay=0),
        challenge_wait_timeout=1,
        solver_ready_timeout=1,
    )


@pytest.fixture
async def http_client(acme: FakeAcmeServer) -> AsyncGenerator[httpx.AsyncClient]:
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
async def directories(http_client: httpx.AsyncClient, settings: Settings) -> DirectoryCache:
    cache = DirectoryCache(http_client, settings.issuers)
    await cache.load()
    return cache


@pytest.fixture
def acme_client(http_client: httpx.AsyncClient, directories: DirectoryCache) -> AcmeClient:
    return AcmeClient(http_client, directories)


@pytest.fixture
def accounts(acme_client: AcmeClient) -> AccountManager:
    return AccountManager(acme_client)


@pytest.fixture
def solver(store: FakeResourceStore, responder: ChallengeResponder, settings: Settings) -> ChallengeSolver:
    return ChallengeSolver(
        store,
        responder,
        solver_role=settings.solver_role,
        probe_timeout=settings.challenge_wait_timeout,
        ready_timeout=settings.solver_ready_timeout,
    )


@pytest.fixture
def orchestrator(
    accounts: AccountManager, solver: ChallengeSolver, settings: Settings
) -> CertificateOrchestrator:
    return CertificateOrchestrator(accounts, solver, settings.auth_finalize)


# =============================================================================
# Pebble
# =============================================================================


@pytest.fixture(scope="session")
def pebble_directory_url() -> str:
    """Return the Pebble ACME directory URL."""
    return PEBBLE_DIRECTORY_URL


@pytest.fixture(scope="session")
def pebble_ca_cert() -> str | bool:
    """Get SSL verification setting for Pebble.

    Returns the PEBBLE_CA_CERT path when set, otherwise False since Pebble
    serves a throwaway certificate.
    """
    ca_cert_path = os.environ.get("PEBBLE_CA_CERT")
    if ca_cert_path and Path(ca_cert_path).exists():
        return ca_cert_path
    return False
