"""Exceptions raised by the kita controller."""

from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from kita.models import Problem


class KitaError(Exception):
    """Base exception for all controller errors."""


class ConfigurationError(KitaError):
    """Missing or invalid issuer setup; fatal at startup."""


class ProtocolError(KitaError):
    """The ACME server sent a malformed or unexpected response."""


class AcmeProtocolError(KitaError):
    """The ACME server answered with a problem document (RFC 8555 Section 6.7).

    Args:
        problem: The decoded problem document.
        status_code: HTTP status code of the response.
        retry_after: Seconds from the Retry-After header, if any.
    """

    def __init__(
        self,
        problem: Problem,
        status_code: int,
        retry_after: int | None = None,
    ):
        self.problem = problem
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(
            f"ACME server reported a problem with the request. "
            f"type={problem.type} detail={problem.detail}"
        )

    @property
    def type(self) -> str:
        return self.problem.type

    @property
    def detail(self) -> str | None:
        return self.problem.detail

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        status_code: int,
        headers: Mapping[str, str] | None = None,
    ) -> "AcmeProtocolError":
        """Create an error from a problem document.

        Routes to a subclass based on the problem type.

        Args:
            data: Parsed JSON problem document.
            status_code: HTTP status code.
            headers: Response headers (for Retry-After extraction).

        Returns:
            AcmeProtocolError instance (or appropriate subclass).
        """
        problem = Problem.model_validate(data)
        retry_after = cls._parse_retry_after(headers.get("retry-after")) if headers else None

        if problem.type == "urn:ietf:params:acme:error:rateLimited":
            return RateLimitError(problem, status_code, retry_after)
        elif problem.type == "urn:ietf:params:acme:error:badNonce":
            return BadNonceError(problem, status_code, retry_after)

        return cls(problem, status_code, retry_after)

    @staticmethod
    def _parse_retry_after(value: str | None) -> int | None:
        """Parse Retry-After header (seconds or HTTP-date)."""
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            pass
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        return max(0, int((dt - datetime.now(timezone.utc)).total_seconds()))


class RateLimitError(AcmeProtocolError):
    """Rate limit exceeded (urn:ietf:params:acme:error:rateLimited)."""


class BadNonceError(AcmeProtocolError):
    """Bad nonce error (urn:ietf:params:acme:error:badNonce)."""


class AccountError(KitaError):
    """The ACME account was not valid after creation."""


class AuthorizationFailedError(KitaError):
    """An authorization ended in a terminal status other than valid.

    Args:
        url: Authorization URL.
        status: The terminal status reported by the server.
        problem: The challenge error, when the server gave one.
    """

    def __init__(self, url: str, status: str, problem: Problem | None = None):
        self.url = url
        self.status = status
        self.problem = problem
        message = f"Authorization {url} ended with status={status}"
        if problem is not None:
            message += f" ({problem.type}: {problem.detail})"
        super().__init__(message)


class UnsupportedChallengeError(KitaError):
    """The authorization did not offer an http-01 challenge."""


class FinalizeError(KitaError):
    """The order was not valid after the CSR was submitted."""


class PollingExhaustedError(KitaError):
    """A resource stayed pending for every allowed poll attempt."""


class TransientPending(KitaError):
    """Polled resource is still pending.

    Only drives the poll retry loop and never escapes it.
    """


class SolverError(KitaError):
    """The challenge solver route could not be set up."""


class ChallengeTimeoutError(KitaError):
    """The CA did not probe the challenge path in time."""


class WatchClosedError(KitaError):
    """A resource watch stream terminated and must be re-established."""
