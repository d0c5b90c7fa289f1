"""Reconciliation of Ingress TLS entries into certificate secrets.

Work is triggered by three sources:

- Ingress watch events (Ingresses with an issuer label, excluding solver ones)
- Secret watch events (secrets with an issuer label)
- A periodic sweep over every selected Ingress

At most one reconciliation runs per Ingress name; events for an Ingress that
is already being reconciled are dropped.
"""

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import aclosing
from typing import Any

from kubernetes.client import V1Ingress, V1IngressTLS, V1Secret

from kita import labels
from kita._logging import get_logger, reconcile_context, reconcile_extra
from kita.config import Settings
from kita.exceptions import WatchClosedError
from kita.orchestrator import CertificateOrchestrator, render_tls_secret
from kita.renewal import RenewalEvaluator, RenewalScheduler
from kita.store.base import EventType, ResourceKind, ResourceStore

logger = get_logger(__name__)

# seconds before a closed watch is re-established
WATCH_RETRY_DELAY = 5.0

Handler = Callable[[Any], None]


def references_secret(ingress: V1Ingress, secret_name: str) -> bool:
    tls_entries = ingress.spec.tls if ingress.spec else None
    return any(tls.secret_name == secret_name for tls in tls_entries or [])


class ReconcileController:
    """Keeps the TLS secrets of labelled Ingresses issued and renewed.

    Args:
        store: Cluster resource store.
        orchestrator: Issues certificates.
        evaluator: Decides whether existing certificates are due.
        scheduler: Holds deferred renewal checks.
        settings: Controller settings.
        watch_retry_delay: Seconds to wait before re-establishing a closed watch.
    """

    def __init__(
        self,
        store: ResourceStore,
        orchestrator: CertificateOrchestrator,
        evaluator: RenewalEvaluator,
        scheduler: RenewalScheduler,
        settings: Settings,
        watch_retry_delay: float = WATCH_RETRY_DELAY,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._evaluator = evaluator
        self._scheduler = scheduler
        self._settings = settings
        self._watch_retry_delay = watch_retry_delay

        self._active: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

        self._ingress_handlers: dict[EventType, Handler] = {
            EventType.ADDED: self._on_ingress_changed,
            EventType.MODIFIED: self._on_ingress_changed,
        }
        self._secret_handlers: dict[EventType, Handler] = {
            EventType.ADDED: self._on_secret_changed,
            EventType.MODIFIED: self._on_secret_changed,
            EventType.DELETED: self._on_secret_deleted,
        }

    @property
    def ingress_selector(self) -> str:
        return labels.ingress_selector(self._settings.solver_role)

    async def run(self) -> None:
        """Consume the watches and run the periodic sweep until cancelled."""
        logger.info(
            "Starting controller",
            extra={"dry_run": self._settings.dry_run, "issuers": sorted(self._settings.issuers)},
        )
        async with asyncio.TaskGroup() as group:
            group.create_task(
                self._watch_loop(ResourceKind.INGRESS, self.ingress_selector, self._ingress_handlers)
            )
            group.create_task(
                self._watch_loop(ResourceKind.SECRET, labels.secret_selector(), self._secret_handlers)
            )
            group.create_task(self._sweep_loop())

    async def close(self) -> None:
        """Cancel in-flight reconciliations and scheduled renewal checks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._scheduler.close()

    async def _watch_loop(self, kind: ResourceKind, selector: str, handlers: dict[EventType, Handler]) -> None:
        while True:
            try:
                async with aclosing(self._store.watch(kind, label_selector=selector)) as events:
                    async for event in events:
                        handler = handlers.get(event.type)
                        if handler is not None:
                            handler(event.object)
            except WatchClosedError as e:
                logger.warning(
                    "Watch closed, re-establishing",
                    extra={"kind": str(kind), "reason": str(e.__cause__ or e)},
                )
            await asyncio.sleep(self._watch_retry_delay)

    async def _sweep_loop(self) -> None:
        interval = self._settings.renewal_check_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Periodic sweep failed")

    async def sweep(self) -> None:
        """Reconcile every selected Ingress."""
        ingresses = await self._store.list_ingresses(self.ingress_selector)
        logger.debug("Sweeping ingresses", extra={"count": len(ingresses)})
        for ingress in ingresses:
            self._spawn(self.reconcile_ingress(ingress), f"reconcile-{ingress.metadata.name}")

    def _on_ingress_changed(self, ingress: V1Ingress) -> None:
        self._spawn(self.reconcile_ingress(ingress), f"reconcile-{ingress.metadata.name}")

    def _on_secret_changed(self, secret: V1Secret) -> None:
        self._spawn(self._check_existing_secret(secret), f"secret-{secret.metadata.name}")

    def _on_secret_deleted(self, secret: V1Secret) -> None:
        secret_name = secret.metadata.name
        logger.info("Secret deleted, re-checking referencing ingresses", extra={"secret": secret_name})
        self._scheduler.cancel(secret_name)
        self._spawn(self.check_secret(secret_name), f"secret-{secret_name}")

    async def _check_existing_secret(self, secret: V1Secret) -> None:
        if self._evaluator.needs_renewal(secret, self.check_secret):
            await self.check_secret(secret.metadata.name)

    async def check_secret(self, secret_name: str) -> None:
        """Reconcile every Ingress whose TLS entries reference a secret."""
        ingresses = await self._store.list_ingresses(self.ingress_selector)
        referencing = [ingress for ingress in ingresses if references_secret(ingress, secret_name)]
        logger.debug(
            "Checking ingresses referencing secret",
            extra={"secret": secret_name, "ingresses": [i.metadata.name for i in referencing]},
        )
        await asyncio.gather(*(self.reconcile_ingress(ingress) for ingress in referencing))

    async def reconcile_ingress(self, ingress: V1Ingress) -> bool:
        """Process every TLS entry of an Ingress.

        Returns:
            False if a reconciliation of the same Ingress was already running
            and this one was dropped.
        """
        name = ingress.metadata.name
        if name in self._active:
            logger.debug("Reconcile already in progress", extra={"ingress": name})
            return False

        self._active.add(name)
        try:
            tls_entries = ingress.spec.tls if ingress.spec else None
            for tls in tls_entries or []:
                try:
                    await self.process_tls(ingress, tls)
                except Exception:
                    logger.exception(
                        "Failed to process TLS entry",
                        extra={"ingress": name, "secret": tls.secret_name, "hosts": tls.hosts},
                    )
        finally:
            self._active.discard(name)
        return True

    async def process_tls(self, ingress: V1Ingress, tls: V1IngressTLS) -> None:
        """Issue a certificate for one TLS entry when its secret needs it."""
        ingress_name = ingress.metadata.name
        ingress_labels = ingress.metadata.labels or {}
        issuer_id = self._settings.override_issuer or ingress_labels.get(labels.ISSUER_LABEL)
        if not issuer_id:
            logger.warning("Ingress has no issuer label", extra={"ingress": ingress_name})
            return
        if not tls.secret_name or not tls.hosts:
            logger.warning(
                "TLS entry lacks a secret name or hosts",
                extra={"ingress": ingress_name, "secret": tls.secret_name},
            )
            return

        with reconcile_context(ingress_name, tls.secret_name, tls.hosts):
            secret = await self._store.read_secret(tls.secret_name)
            if not self._needs_certificate(secret, tls.secret_name, issuer_id):
                return

            if self._settings.dry_run:
                logger.info("Dry run, skipping certificate issuance", extra=reconcile_extra())
                return

            bundle = await self._orchestrator.issue(ingress, tls, issuer_id)
            await self._store.create_or_replace_secret(
                render_tls_secret(bundle, tls.secret_name, issuer_id, ingress_name)
            )
            logger.info("Stored certificate", extra={"issuer": issuer_id, **reconcile_extra()})

    def _needs_certificate(self, secret: V1Secret | None, secret_name: str, issuer_id: str) -> bool:
        if secret is None:
            logger.info("Secret is missing", extra={"secret": secret_name})
            return True

        current_issuer = (secret.metadata.labels or {}).get(labels.ISSUER_LABEL)
        if current_issuer != issuer_id:
            logger.info(
                "Secret was issued by a different issuer",
                extra={"secret": secret_name, "current_issuer": current_issuer, "issuer": issuer_id},
            )
            return True

        return self._evaluator.needs_renewal(secret, self.check_secret)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", exc_info=error, extra={"task": task.get_name()})
