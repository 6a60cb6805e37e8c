from __future__ import annotations

import hmac
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from card_pipeline.errors import PipelineError


class AuthenticationError(PipelineError):
    """Missing or invalid caller credentials."""


class Authenticator(ABC):
    @abstractmethod
    def authenticate(self, token: Optional[str]) -> str:
        """Return the caller identity for ``token`` or raise ``AuthenticationError``."""


class StaticTokenAuthenticator(Authenticator):
    """Accepts bearer tokens from a fixed list (``SERVICE_API_TOKENS``, comma separated).

    Entries may be ``user:token``; bare tokens authenticate as ``service``.
    """

    def __init__(self, tokens: Iterable[str]) -> None:
        self._tokens: dict[str, str] = {}
        for entry in tokens:
            entry = entry.strip()
            if not entry:
                continue
            user, sep, token = entry.partition(":")
            if sep:
                self._tokens[token.strip()] = user.strip() or "service"
            else:
                self._tokens[entry] = "service"

    @classmethod
    def from_string(cls, raw: str) -> "StaticTokenAuthenticator":
        return cls((raw or "").split(","))

    def authenticate(self, token: Optional[str]) -> str:
        if not token:
            raise AuthenticationError("missing bearer token")
        for known, user in self._tokens.items():
            if hmac.compare_digest(known, token):
                return user
        raise AuthenticationError("invalid bearer token")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


__all__ = ["AuthenticationError", "Authenticator", "StaticTokenAuthenticator", "bearer_token"]
