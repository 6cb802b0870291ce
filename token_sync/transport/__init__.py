"""
Transport for token-sync.

Provides the usage API client and credential resolution.
"""

from .api import ApiResponse, post_sync_payload, post_sync_payload_with_retry, resolve_sync_url
from .auth import AuthStatus, AuthToken, resolve_auth_token

__all__ = [
    "ApiResponse",
    "AuthStatus",
    "AuthToken",
    "post_sync_payload",
    "post_sync_payload_with_retry",
    "resolve_auth_token",
    "resolve_sync_url",
]
