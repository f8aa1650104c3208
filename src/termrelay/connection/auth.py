"""Authentication gate for client connections.

Token issuance is external; these authenticators only check a presented
token. One check happens per connection, before any session traffic.
"""

from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from termrelay.config.settings import AuthConfig

logger = logging.getLogger(__name__)


class AuthResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    authorized: bool
    user_id: str | None = Field(default=None, description="Identity the token belongs to")
    reason: str = Field(default="")


class Authenticator(ABC):
    @abstractmethod
    async def authenticate(self, token: str | None) -> AuthResult:
        ...


class AllowAllAuthenticator(Authenticator):
    """Accepts every connection. Used when no tokens are configured."""

    async def authenticate(self, token: str | None) -> AuthResult:
        return AuthResult(authorized=True)


class StaticTokenAuthenticator(Authenticator):
    """Checks tokens against a fixed user id -> token table."""

    def __init__(self, tokens: Mapping[str, SecretStr | str]) -> None:
        if not tokens:
            raise ValueError("StaticTokenAuthenticator needs at least one token")
        self._tokens = {
            user_id: (t.get_secret_value() if isinstance(t, SecretStr) else t).encode("utf-8")
            for user_id, t in tokens.items()
        }

    async def authenticate(self, token: str | None) -> AuthResult:
        if not token:
            return AuthResult(authorized=False, reason="missing token")
        presented = token.encode("utf-8")
        for user_id, expected in self._tokens.items():
            if hmac.compare_digest(presented, expected):
                return AuthResult(authorized=True, user_id=user_id)
        logger.warning("Rejected connection with an unknown token")
        return AuthResult(authorized=False, reason="invalid token")


def build_authenticator(config: AuthConfig) -> Authenticator:
    if not config.tokens:
        logger.warning("No access tokens configured; accepting all connections")
        return AllowAllAuthenticator()
    return StaticTokenAuthenticator(config.tokens)
