"""Credential pools, OAuth refresh and the auth facade providers use."""

from .credentials import OAuthCredential
from .facade import AuthHelper, AuthStatus
from .keypool import APIKeyPool, APIKeyRecord
from .oauth import CredentialState, OAuthManager
from .refresh import refresh_func_for

__all__ = [
    "APIKeyPool",
    "APIKeyRecord",
    "AuthHelper",
    "AuthStatus",
    "CredentialState",
    "OAuthCredential",
    "OAuthManager",
    "refresh_func_for",
]
