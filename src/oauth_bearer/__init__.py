"""
OAuth 2.0 bearer token tool.

This package obtains an OAuth 2.0 bearer token through the authorization
code flow and keeps it fresh with the refresh token grant. The token is
kept in two files in a data directory so other tools can use it without
authenticating again:

- token.json: the token response plus its absolute expiry time
- bearer.cfg: ``--oauth2-bearer <token>``, a curl config file

Public API:
    BearerConfig: Configuration passed to every component
    Credential: OAuth client credential
    TokenData: Token record
    TokenStorage: Two-file commit of the token record and bearer config
    TokenExchangeClient: Token endpoint client
    OAuthCallbackServer: One-shot loopback listener for the redirect
    LockCoordinator: Cross-process lock
    RefreshScheduler: Refresh-when-due driver
    AuthorizationCoordinator: Interactive authorization driver

Exceptions:
    OAuthBearerError: Base exception
    ConfigError: Missing or malformed configuration or token record
    ValidationError: Field grammar mismatch
    ProtocolError: Malformed callback request or HTTP status
    TransferError: Token endpoint returned an error
    LockTimeoutError: Lock wait timed out
    CommitTimeoutError: Rename into place timed out
"""

from .auth_server import OAuthCallbackServer
from .config import BearerConfig, Credential, load_credential, parse_duration
from .coordinator import AuthorizationCoordinator, build_authorization_url
from .exceptions import (
    CommitTimeoutError,
    ConfigError,
    LockTimeoutError,
    OAuthBearerError,
    ProtocolError,
    TransferError,
    ValidationError,
)
from .lock import LockCoordinator
from .scheduler import RefreshScheduler
from .token_client import TokenExchangeClient, TokenRequestBody
from .token_storage import TokenData, TokenStorage

__all__ = [
    # Configuration
    "BearerConfig",
    "Credential",
    "load_credential",
    "parse_duration",
    # Token Storage
    "TokenData",
    "TokenStorage",
    # Token Exchange
    "TokenExchangeClient",
    "TokenRequestBody",
    # Authorization Server
    "OAuthCallbackServer",
    # Lock
    "LockCoordinator",
    # Drivers
    "RefreshScheduler",
    "AuthorizationCoordinator",
    "build_authorization_url",
    # Exceptions
    "OAuthBearerError",
    "ConfigError",
    "ValidationError",
    "ProtocolError",
    "TransferError",
    "LockTimeoutError",
    "CommitTimeoutError",
]
