"""Caller identity resolution for the HTTP API.

Verifying credentials is the job of an external identity service; the API
only needs an owner id for each request. ``IdentityProvider`` is the seam
where such a service plugs in.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Unauthorized(Exception):
    """Raised when a request carries no usable identity."""

    def __init__(self, error: str, reason: str | None = None):
        super().__init__(reason or error)
        self.error = error
        self.reason = reason

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.reason:
            body["reason"] = self.reason
        return body


class IdentityProvider(ABC):
    """Maps a bearer token to a verified owner id."""

    @abstractmethod
    async def resolve(self, token: str) -> str | None:
        """Return the owner id for the token, or None if it is not valid."""
        pass


class StaticTokenIdentity(IdentityProvider):
    """Fixed token -> owner table, taken from configuration."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def resolve(self, token: str) -> str | None:
        return self._tokens.get(token)


def parse_bearer(header: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        Unauthorized: Header missing or not in bearer form.
    """
    if not header:
        raise Unauthorized("unauthorized", "no_authorization_header")

    parts = header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise Unauthorized("unauthorized", "bad_authorization_format")

    return parts[1]


async def authenticate(identity: IdentityProvider, header: str | None) -> str:
    """Resolve the caller's owner id from the Authorization header.

    Raises:
        Unauthorized: No header, malformed header, or unknown token.
    """
    token = parse_bearer(header)
    owner_id = await identity.resolve(token)
    if owner_id is None:
        logger.warning("Token verification failed")
        raise Unauthorized("invalid_token")
    return owner_id
