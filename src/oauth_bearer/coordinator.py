"""
Authorization coordinator for the one-time interactive flow.

This module drives a new authorization: it takes the lock, starts the
callback listener, sends the user to the provider's consent page, exchanges
the returned code for tokens and commits them.
"""

import logging
import time
from typing import Callable, Optional

from .auth_server import OAuthCallbackServer
from .browser import BrowserLauncher, launch, select_launcher
from .config import BearerConfig, Credential, load_credential, urlencode_value
from .exceptions import ValidationError
from .lock import LockCoordinator
from .token_client import TokenExchangeClient, TokenRequestBody
from .token_storage import TokenData, TokenStorage, stamp_absolute_expiry
from .validators import load_json_object

logger = logging.getLogger(__name__)


def build_authorization_url(
    authorization_url: str, credential: Credential, redirect_uri: str
) -> str:
    """
    Build the provider's interactive authorization URL.

    Offline access is requested so that the token response includes a
    refresh token.
    """
    params = [
        ("client_id", credential.client_id),
        ("redirect_uri", redirect_uri),
        ("scope", credential.scope),
        ("response_type", "code"),
        ("access_type", "offline"),
    ]
    query = "&".join(f"{key}={urlencode_value(value)}" for key, value in params)
    return f"{authorization_url}?{query}"


class AuthorizationCoordinator:
    """
    Runs the authorization code flow and stores the resulting tokens.

    Example:
        coordinator = AuthorizationCoordinator(BearerConfig(datadir=path))
        token = coordinator.run_authorization_flow()
    """

    def __init__(
        self,
        config: BearerConfig,
        storage: Optional[TokenStorage] = None,
        client: Optional[TokenExchangeClient] = None,
        lock: Optional[LockCoordinator] = None,
        launcher: Optional[BrowserLauncher] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize authorization coordinator.

        Args:
            config: Bearer configuration
            storage: Token storage (creates default if not provided)
            client: Token exchange client (creates default if not provided)
            lock: Lock coordinator (creates default if not provided)
            launcher: Browser launcher (selected for the platform if not provided)
            clock: Wall clock returning Unix time
        """
        self.config = config
        self.storage = storage or TokenStorage.from_config(config)
        self.client = client or TokenExchangeClient.from_config(config)
        self.lock = lock or LockCoordinator(config.path(config.lock_file))
        self.launcher = launcher or select_launcher()
        self._clock = clock

    def _open_browser(self, url: str) -> None:
        url_file = self.config.path(self.config.url_file)
        url_file.write_text(url, encoding="utf-8")

        print("\n" + "=" * 70)
        print("OAUTH AUTHORIZATION")
        print("=" * 70)
        print(f"\nopening browser url {url}\n")
        print(f"(if open fails then copy url from {url_file} and paste into browser)\n")

        if not launch(self.launcher, url):
            print("Please copy the URL above and paste it in your browser.")

    def run_authorization_flow(self) -> TokenData:
        """
        Run the complete authorization code flow.

        This orchestrates the full authorization process:
        1. Acquires the lock (waiting as long as it takes)
        2. Starts the loopback callback listener
        3. Opens the authorization URL in the browser
        4. Receives the authorization code from the redirect
        5. Exchanges the code for access and refresh tokens
        6. Commits the bearer config and token record

        Returns:
            The stored TokenData

        Raises:
            ConfigError: If the credential cannot be read
            ValidationError: If the credential or token response is malformed
            ProtocolError: If the redirect request carries no valid code
            TransferError: If the token exchange failed
            CommitTimeoutError: If the new files could not be put in place
            OSError: If the callback address cannot be bound
        """
        self.lock.acquire(timeout=None)
        self.storage.cleanup_temp_files()

        with OAuthCallbackServer(self.config.callback_host, self.config.callback_port) as server:
            credential = load_credential(self.config.path(self.config.credential_file))
            redirect_uri = server.redirect_uri

            self._open_browser(
                build_authorization_url(self.config.authorization_url, credential, redirect_uri)
            )

            code = server.wait_for_code(timeout=self.config.callback_timeout)

        body = TokenRequestBody.authorization_code(
            code=code,
            client_id=credential.client_id,
            client_secret=credential.client_secret,
            redirect_uri=redirect_uri,
        )

        issued_at = int(self._clock())
        text = self.client.exchange(body, timeout=self.config.authorization_transfer_timeout)

        source = str(self.client.response_file or "token response")
        document = stamp_absolute_expiry(
            load_json_object(text, source, ValidationError), issued_at, source
        )
        token = TokenData.from_document(document, source)

        self.storage.commit(token)
        logger.info("Authorization complete, tokens saved")
        return token
