"""Caller identification.

Credential and session validation happen outside this service; an upstream
gateway authenticates the user and forwards the identity. An AuthProvider
turns the incoming request into a user id, and ``current_user_id`` exposes the
active provider as a FastAPI dependency.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


class AuthProvider(ABC):
    """Resolves the authenticated user for a request."""

    @abstractmethod
    def get_user_id(self, request: Request) -> Optional[str]:
        """Return the caller's user id, or None if the request is unauthenticated."""


class TrustedHeaderAuthProvider(AuthProvider):
    """Reads the user id from a header set by a trusted upstream gateway.

    Args:
        header_name: Request header carrying the user id.
    """

    def __init__(self, header_name: str = "X-User-Id") -> None:
        self.header_name = header_name

    def get_user_id(self, request: Request) -> Optional[str]:
        value = request.headers.get(self.header_name, "").strip()
        return value or None


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_provider: AuthProvider = TrustedHeaderAuthProvider()


def get_auth_provider() -> AuthProvider:
    return _provider


def set_auth_provider(provider: AuthProvider) -> None:
    """Set (or replace) the global AuthProvider instance."""
    global _provider
    _provider = provider


def current_user_id(request: Request) -> str:
    """FastAPI dependency returning the authenticated user's id.

    Raises:
        HTTPException 401: If the request is not authenticated.
    """
    user_id = _provider.get_user_id(request)
    if not user_id:
        logger.info("Unauthenticated request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
