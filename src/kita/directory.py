"""Per-issuer ACME directories and replay nonces."""

import asyncio

import httpx
from pydantic import ValidationError

from kita._logging import get_logger
from kita.config import Issuer
from kita.exceptions import ConfigurationError, ProtocolError
from kita.models import Directory

logger = get_logger(__name__)

NONCE_HEADER = "Replay-Nonce"


class DirectoryCache:
    """Resolved ACME directories plus the latest nonce seen for each issuer.

    Directories are loaded once by :meth:`load` before reconciliation starts
    and are read-only afterwards. At most one nonce is held per issuer.

    Args:
        http: Shared HTTP client for talking to the ACME servers.
        issuers: Configured issuers keyed by issuer ID.
    """

    def __init__(self, http: httpx.AsyncClient, issuers: dict[str, Issuer]):
        self._http = http
        self._issuers = dict(issuers)
        self._directories: dict[str, Directory] = {}
        self._nonces: dict[str, str] = {}

    async def load(self) -> None:
        """Resolve the directory of every configured issuer.

        Raises:
            ConfigurationError: If any issuer's directory cannot be loaded.
        """
        logger.debug("Loading directories", extra={"issuers": sorted(self._issuers)})
        results = await asyncio.gather(
            *(self._retrieve(issuer_id, issuer) for issuer_id, issuer in self._issuers.items())
        )
        self._directories = dict(zip(self._issuers, results, strict=True))
        logger.info("Loaded ACME directories", extra={"issuers": sorted(self._directories)})

    async def _retrieve(self, issuer_id: str, issuer: Issuer) -> Directory:
        try:
            response = await self._http.get(
                issuer.directory_url,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            return Directory.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise ConfigurationError(
                f"Unable to load directory for issuer {issuer_id} from {issuer.directory_url}: {e}"
            ) from e

    def directory_for(self, issuer_id: str) -> Directory:
        """Get the resolved directory of an issuer.

        Raises:
            ConfigurationError: If the issuer has no resolved directory.
        """
        directory = self._directories.get(issuer_id)
        if directory is None:
            raise ConfigurationError(f"Unable to find directory for issuer {issuer_id}")
        return directory

    def issuer_for(self, issuer_id: str) -> Issuer:
        """Get the configuration of an issuer.

        Raises:
            ConfigurationError: If the issuer is not configured.
        """
        issuer = self._issuers.get(issuer_id)
        if issuer is None:
            raise ConfigurationError(f"Issuer is not configured: {issuer_id}")
        return issuer

    async def nonce_for(self, issuer_id: str) -> str:
        """Take the latched nonce, or fetch a fresh one from newNonce.

        Raises:
            ConfigurationError: If the issuer has no resolved directory.
            ProtocolError: If the server did not return a nonce.
        """
        nonce = self._nonces.pop(issuer_id, None)
        if nonce is not None:
            return nonce

        response = await self._http.head(self.directory_for(issuer_id).new_nonce)
        nonce = response.headers.get(NONCE_HEADER)
        if not nonce:
            raise ProtocolError(
                f"newNonce response for issuer {issuer_id} "
                f"(status={response.status_code}) had no {NONCE_HEADER} header"
            )
        return nonce

    def latch(self, issuer_id: str, nonce: str | None) -> None:
        """Remember the freshest nonce returned by the server."""
        if nonce:
            self._nonces[issuer_id] = nonce
