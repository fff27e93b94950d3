"""Authentication module.

Identity is established by an external collaborator (gateway / session
service). This module only maps a request to the authenticated user id.

Services:
    - AuthProvider: abstract request -> user id resolver.
    - TrustedHeaderAuthProvider: reads the id from a gateway-set header.
"""
from .provider import (
    AuthProvider,
    TrustedHeaderAuthProvider,
    current_user_id,
    get_auth_provider,
    set_auth_provider,
)

__all__ = [
    "AuthProvider",
    "TrustedHeaderAuthProvider",
    "current_user_id",
    "get_auth_provider",
    "set_auth_provider",
]
