"""Signed request/response layer for talking to ACME servers."""

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, ValidationError

from kita._logging import get_logger
from kita.crypto import sign_jws
from kita.directory import NONCE_HEADER, DirectoryCache
from kita.exceptions import AcmeProtocolError, ProtocolError

logger = get_logger(__name__)

JOSE_JSON = "application/jose+json"

T = TypeVar("T")


@dataclass
class AcmeResponse(Generic[T]):
    """Decoded ACME response.

    ``body`` is None when the server sent no content.
    """

    body: T | None
    status_code: int
    headers: httpx.Headers

    @property
    def location(self) -> str | None:
        return self.headers.get("Location")


class AcmeClient:
    """Authenticated ACME request layer (RFC 8555 Section 6).

    Every request is a JWS-signed POST. The nonce for the request comes from
    the directory cache and the nonce of every response is latched back into
    it, whatever the outcome. Requests to the same issuer are serialized so
    that each one consumes the nonce left by the previous one.

    This class never retries; callers own the retry policy.

    Args:
        http: Shared HTTP client.
        directories: Directory and nonce cache.
    """

    def __init__(self, http: httpx.AsyncClient, directories: DirectoryCache):
        self._http = http
        self.directories = directories
        self._issuer_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def request(
        self,
        issuer_id: str,
        key: rsa.RSAPrivateKey,
        kid: str | None,
        url: str,
        payload: dict[str, Any] | str,
        response_model: type[T] | None = None,
    ) -> AcmeResponse[T]:
        """Make a JWS-signed POST request to an ACME server.

        Args:
            issuer_id: Issuer the request belongs to.
            key: Account key to sign with.
            kid: Account URL, or None to embed the public JWK (new account).
            url: The endpoint URL.
            payload: Request payload (dict for JSON, "" for POST-as-GET).
            response_model: Pydantic model for the body, ``str`` for text
                bodies, or None to ignore the body.

        Returns:
            The decoded response.

        Raises:
            AcmeProtocolError: If the server returned a problem document.
            ProtocolError: If the response could not be decoded.
        """
        async with self._issuer_locks[issuer_id]:
            nonce = await self.directories.nonce_for(issuer_id)
            body = sign_jws(key=key, payload=payload, url=url, nonce=nonce, kid=kid)

            logger.debug(
                "Sending ACME request",
                extra={"issuer": issuer_id, "url": url, "post_as_get": payload == ""},
            )
            response = await self._http.post(
                url,
                content=json.dumps(body),
                headers={"Content-Type": JOSE_JSON},
            )
            self.directories.latch(issuer_id, response.headers.get(NONCE_HEADER))

        logger.debug(
            "Received ACME response",
            extra={"issuer": issuer_id, "url": url, "status_code": response.status_code},
        )

        if response.is_error:
            raise self._problem_error(issuer_id, url, response)

        return AcmeResponse(
            body=self._decode(url, response, response_model),
            status_code=response.status_code,
            headers=response.headers,
        )

    def _problem_error(
        self, issuer_id: str, url: str, response: httpx.Response
    ) -> AcmeProtocolError | ProtocolError:
        try:
            error = AcmeProtocolError.from_response(
                response.json(),
                response.status_code,
                headers=response.headers,
            )
        except (ValueError, ValidationError):
            return ProtocolError(
                f"HTTP {response.status_code} from {url} without a problem document: {response.text}"
            )
        logger.warning(
            "Failed response from ACME server",
            extra={
                "issuer": issuer_id,
                "url": url,
                "status_code": response.status_code,
                "problem_type": error.type,
                "problem_detail": error.detail,
            },
        )
        return error

    @staticmethod
    def _decode(url: str, response: httpx.Response, response_model: type[T] | None) -> T | None:
        if response_model is None or not response.content:
            return None
        if response_model is str:
            return response.text  # type: ignore[return-value]
        try:
            data = response.json()
            if issubclass(response_model, BaseModel):
                return response_model.model_validate(data)  # type: ignore[return-value]
            return data
        except (ValueError, ValidationError) as e:
            raise ProtocolError(f"Unexpected response body from {url}: {e}") from e
