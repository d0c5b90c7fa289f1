"""Renewal decisions for issued certificates and deferred renewal checks."""

import asyncio
import base64
import binascii
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from kubernetes.client import V1Secret

from kita import labels
from kita._logging import get_logger
from kita.crypto import load_first_certificate

logger = get_logger(__name__)

Clock = Callable[[], datetime]
RenewalCallback = Callable[[str], Awaitable[None]]

# checks fire just after the due instant so the evaluation sees it as due
SCHEDULE_MARGIN = timedelta(seconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RenewalDecision:
    """Outcome of evaluating a TLS secret's certificate.

    ``due_at`` and ``not_after`` are None when the certificate could not be read.
    """

    due: bool
    due_at: datetime | None = None
    not_after: datetime | None = None


class RenewalScheduler:
    """Deferred renewal checks, at most one per secret.

    Scheduling a check for a secret cancels the one already pending for it.

    Args:
        clock: Returns the current time as an aware datetime.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._checks: dict[str, asyncio.Task[None]] = {}

    def schedule(self, secret_name: str, when: datetime, callback: RenewalCallback) -> None:
        """Run ``callback(secret_name)`` at ``when``, replacing any pending check."""
        self.cancel(secret_name)
        delay = max(0.0, (when - self._clock()).total_seconds())
        logger.debug(
            "Scheduling renewal check",
            extra={"secret": secret_name, "when": when.isoformat(), "delay_seconds": delay},
        )
        self._checks[secret_name] = asyncio.create_task(
            self._fire(secret_name, delay, callback), name=f"renewal-check-{secret_name}"
        )

    def cancel(self, secret_name: str) -> None:
        check = self._checks.pop(secret_name, None)
        if check is not None:
            logger.debug("Cancelling renewal check", extra={"secret": secret_name})
            check.cancel()

    def __contains__(self, secret_name: str) -> bool:
        return secret_name in self._checks

    async def close(self) -> None:
        """Cancel every pending check and wait for them to finish."""
        checks = list(self._checks.values())
        self._checks.clear()
        for check in checks:
            check.cancel()
        await asyncio.gather(*checks, return_exceptions=True)

    async def _fire(self, secret_name: str, delay: float, callback: RenewalCallback) -> None:
        await asyncio.sleep(delay)
        # no longer pending, so the callback may schedule the next check
        if self._checks.get(secret_name) is asyncio.current_task():
            del self._checks[secret_name]

        logger.info("Running scheduled renewal check", extra={"secret": secret_name})
        try:
            await callback(secret_name)
        except Exception:
            logger.exception("Scheduled renewal check failed", extra={"secret": secret_name})


class RenewalEvaluator:
    """Applies the one-third-remaining rule to the certificate of a TLS secret.

    A certificate is due for renewal once a third of its lifetime remains,
    i.e. when ``now >= notAfter - (notAfter - notBefore) / 3``.

    Args:
        scheduler: Where checks of not-yet-due certificates are scheduled.
        clock: Returns the current time as an aware datetime.
    """

    def __init__(self, scheduler: RenewalScheduler, clock: Clock = utcnow):
        self._scheduler = scheduler
        self._clock = clock

    def evaluate(self, secret: V1Secret) -> RenewalDecision:
        """Decide whether the certificate held by a secret is due.

        Missing or unreadable certificate data is logged and reported as not due.
        """
        secret_name = secret.metadata.name
        encoded = (secret.data or {}).get(labels.TLS_CERT_KEY)
        if not encoded:
            logger.warning("Secret has no certificate data", extra={"secret": secret_name})
            return RenewalDecision(due=False)

        try:
            certificate = load_first_certificate(base64.b64decode(encoded))
        except (binascii.Error, ValueError) as e:
            logger.warning(
                "Unable to parse certificate in secret",
                extra={"secret": secret_name, "error": str(e)},
            )
            return RenewalDecision(due=False)

        not_before = certificate.not_valid_before_utc
        not_after = certificate.not_valid_after_utc
        due_at = not_after - (not_after - not_before) / 3

        return RenewalDecision(due=self._clock() >= due_at, due_at=due_at, not_after=not_after)

    def needs_renewal(self, secret: V1Secret, on_due: RenewalCallback) -> bool:
        """Evaluate a secret and schedule a later check when it is not yet due.

        Args:
            secret: TLS secret holding the current certificate.
            on_due: Called with the secret name when the scheduled check fires.

        Returns:
            True if the certificate should be renewed now.
        """
        secret_name = secret.metadata.name
        decision = self.evaluate(secret)

        if decision.due:
            logger.info(
                "Certificate is due for renewal",
                extra={"secret": secret_name, "not_after": decision.not_after.isoformat()},
            )
            return True

        if decision.due_at is not None:
            logger.debug(
                "Certificate is not due for renewal",
                extra={"secret": secret_name, "due_at": decision.due_at.isoformat()},
            )
            self._scheduler.schedule(secret_name, decision.due_at + SCHEDULE_MARGIN, on_due)
        return False
