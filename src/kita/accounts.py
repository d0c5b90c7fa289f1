"""ACME account provisioning, one account per issuer."""

import asyncio
from typing import Any, TypeVar

from kita._logging import get_logger
from kita.client import AcmeClient, AcmeResponse
from kita.crypto import generate_rsa_key, key_thumbprint
from kita.directory import DirectoryCache
from kita.exceptions import AccountError
from kita.models import Account, AccountResource, AccountStatus, NewAccountRequest

logger = get_logger(__name__)

T = TypeVar("T")

ACCOUNT_KEY_SIZE = 2048


class AccountManager:
    """Creates and caches the ACME account of each issuer.

    Accounts are created lazily on first use and kept for the lifetime of
    the process. Creation is single-flight per issuer: concurrent callers
    share one in-flight creation and all observe its result or its failure.
    A failed creation is not cached, so the next call tries again.

    Args:
        client: Signed request layer.
    """

    def __init__(self, client: AcmeClient):
        self._client = client
        self._accounts: dict[str, Account] = {}
        self._creations: dict[str, asyncio.Task[Account]] = {}

    @property
    def directories(self) -> DirectoryCache:
        return self._client.directories

    async def account_for(self, issuer_id: str) -> Account:
        """Get the account of an issuer, creating it if needed.

        Raises:
            ConfigurationError: If the issuer is not configured.
            AccountError: If the server did not return a valid account.
            AcmeProtocolError: If the server rejected the request.
        """
        account = self._accounts.get(issuer_id)
        if account is not None:
            return account

        creation = self._creations.get(issuer_id)
        if creation is None:
            creation = asyncio.create_task(self._create_account(issuer_id))
            self._creations[issuer_id] = creation
            # registered before any waiter so the cache is filled first
            creation.add_done_callback(lambda task: self._creation_done(issuer_id, task))

        # a cancelled waiter must not cancel the shared creation
        return await asyncio.shield(creation)

    def _creation_done(self, issuer_id: str, task: asyncio.Task[Account]) -> None:
        self._creations.pop(issuer_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._accounts[issuer_id] = task.result()
        else:
            logger.warning(
                "Account creation failed",
                extra={"issuer": issuer_id, "error": str(error)},
            )

    async def _create_account(self, issuer_id: str) -> Account:
        logger.debug("Creating account", extra={"issuer": issuer_id})
        directories = self.directories
        issuer = directories.issuer_for(issuer_id)
        new_account_url = directories.directory_for(issuer_id).new_account

        key = await asyncio.to_thread(generate_rsa_key, ACCOUNT_KEY_SIZE)
        payload = NewAccountRequest(
            contact=[f"mailto:{email}" for email in issuer.emails],
            terms_of_service_agreed=issuer.terms_of_service_agreed,
        )

        response = await self._client.request(
            issuer_id,
            key,
            None,  # new accounts are identified by jwk, not kid
            new_account_url,
            payload.model_dump(by_alias=True, exclude_none=True),
            AccountResource,
        )

        if response.body is None:
            raise AccountError(f"New account response for issuer {issuer_id} was empty")
        if response.body.status != AccountStatus.VALID:
            raise AccountError(
                f"Account for issuer {issuer_id} is not valid, was {response.body.status}"
            )
        if not response.location:
            raise AccountError(f"New account response for issuer {issuer_id} had no Location")

        logger.info("Account ready", extra={"issuer": issuer_id, "account_url": response.location})
        return Account(issuer_id=issuer_id, url=response.location, key=key)

    async def key_authorization_for(self, issuer_id: str, token: str) -> str:
        """Build the key authorization for a challenge token (RFC 8555 Section 8.1).

        Returns:
            ``token + "." + thumbprint`` of the issuer's account key.
        """
        account = await self.account_for(issuer_id)
        return f"{token}.{key_thumbprint(account.key)}"

    async def request(
        self,
        issuer_id: str,
        url: str,
        payload: dict[str, Any] | str,
        response_model: type[T] | None = None,
    ) -> AcmeResponse[T]:
        """Make a request signed by the issuer's account (kid header).

        Args:
            issuer_id: Issuer to talk to.
            url: The endpoint URL.
            payload: Request payload (dict for JSON, "" for POST-as-GET).
            response_model: Expected body shape, see :meth:`AcmeClient.request`.

        Returns:
            The decoded response.
        """
        account = await self.account_for(issuer_id)
        return await self._client.request(
            issuer_id, account.key, account.url, url, payload, response_model
        )
