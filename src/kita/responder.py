"""HTTP-01 challenge responder.

Keeps the key authorization of every token being solved and serves it at
``/.well-known/acme-challenge/{token}``. The first time a token is served its
completion future resolves, which tells the solver the CA reached us.
"""

import asyncio
from dataclasses import dataclass

from aiohttp import web

from kita._logging import get_logger

logger = get_logger(__name__)

BASE_CHALLENGE_PATH = "/.well-known/acme-challenge"


def challenge_path_for(token: str) -> str:
    return f"{BASE_CHALLENGE_PATH}/{token}"


@dataclass
class PendingChallenge:
    token: str
    key_authorization: str
    completed: asyncio.Future[str]


@dataclass(frozen=True)
class PreparedChallenge:
    """What the solver needs once a token is registered."""

    path: str
    completed: asyncio.Future[str]


class ChallengeResponder:
    """Registry of pending HTTP-01 challenges keyed by token."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingChallenge] = {}

    def register(self, token: str, key_authorization: str) -> PreparedChallenge:
        """Start answering probes for a token.

        Args:
            token: Challenge token issued by the CA.
            key_authorization: Body to serve for the token.

        Returns:
            The challenge path and a future resolved on the first probe.
        """
        logger.debug("Preparing for challenge", extra={"token": token})
        completed: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[token] = PendingChallenge(token, key_authorization, completed)
        return PreparedChallenge(path=challenge_path_for(token), completed=completed)

    def unregister(self, token: str) -> None:
        """Stop answering probes for a token."""
        logger.debug("Removing challenge", extra={"token": token})
        pending = self._pending.pop(token, None)
        if pending is not None and not pending.completed.done():
            pending.completed.cancel()

    def respond(self, token: str) -> str | None:
        """Answer a probe.

        Returns:
            The key authorization, or None if the token is unknown.
        """
        pending = self._pending.get(token)
        if pending is None:
            logger.warning("Challenge did not exist", extra={"token": token})
            return None

        if not pending.completed.done():
            pending.completed.set_result(token)
        logger.debug("Responding with key authorization", extra={"token": token})
        return pending.key_authorization

    def __contains__(self, token: str) -> bool:
        return token in self._pending


RESPONDER_KEY = web.AppKey("responder", ChallengeResponder)


async def handle_challenge(request: web.Request) -> web.Response:
    token = request.match_info["token"]
    key_authorization = request.app[RESPONDER_KEY].respond(token)
    if key_authorization is None:
        raise web.HTTPNotFound(text=f"Challenge not present for token {token}")
    return web.Response(body=key_authorization.encode("ascii"), content_type="application/octet-stream")


async def handle_health(request: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(responder: ChallengeResponder) -> web.Application:
    """Build the aiohttp application serving challenge responses."""
    app = web.Application()
    app[RESPONDER_KEY] = responder
    app.router.add_get(BASE_CHALLENGE_PATH + "/{token}", handle_challenge)
    app.router.add_get("/healthz", handle_health)
    return app
