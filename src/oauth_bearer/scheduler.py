"""
Refresh scheduler.

Decides whether the stored access token is close enough to expiry to need
a refresh and, if so, runs the refresh token grant and commits the merged
result. When no refresh is due the run ends quietly without touching the
network.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import BearerConfig, load_credential
from .exceptions import TransferError, ValidationError
from .lock import LockCoordinator
from .token_client import TokenExchangeClient, TokenRequestBody
from .token_storage import TokenData, TokenStorage, stamp_absolute_expiry
from .validators import load_json_object

logger = logging.getLogger(__name__)


def merge_token_response(
    old: Dict[str, Any], response: Dict[str, Any], issued_at: int, source: str
) -> Dict[str, Any]:
    """
    Merge a refresh response into the previous token record.

    Fields present in the response overwrite the old ones; fields the
    provider leaves out (typically refresh_token) are kept. The absolute
    expiry is always recomputed from the new expires_in and the issue time
    of this request.

    Raises:
        ValidationError: If the response's expires_in is missing or malformed
    """
    stamped = stamp_absolute_expiry(response, issued_at, source)

    merged = dict(old)
    merged.update({key: value for key, value in stamped.items() if value is not None})
    return merged


class RefreshScheduler:
    """
    Refreshes the token record when it is due.

    Lock acquisition and the token transfer share one time budget
    (``max_transfer_time``); time spent waiting for the lock is taken off
    what the transfer may use.
    """

    def __init__(
        self,
        config: BearerConfig,
        storage: Optional[TokenStorage] = None,
        client: Optional[TokenExchangeClient] = None,
        lock: Optional[LockCoordinator] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize refresh scheduler.

        Args:
            config: Bearer configuration
            storage: Token storage (creates default if not provided)
            client: Token exchange client (creates default if not provided)
            lock: Lock coordinator (creates default if not provided)
            clock: Wall clock returning Unix time
        """
        self.config = config
        self.storage = storage or TokenStorage.from_config(config)
        self.client = client or TokenExchangeClient.from_config(config)
        self.lock = lock or LockCoordinator(config.path(config.lock_file))
        self._clock = clock

    def refresh(self, force: bool = False) -> Optional[TokenData]:
        """
        Refresh the token if it is due (or if forced).

        Args:
            force: Refresh regardless of expiry

        Returns:
            The new TokenData, or None if no refresh was due

        Raises:
            LockTimeoutError: If the lock was not acquired within the budget
            ConfigError: If the token record or credential cannot be read
            ValidationError: If stored or received token data is malformed
            TransferError: If the budget ran out or the transfer failed
            CommitTimeoutError: If the new files could not be put in place
        """
        start_time = self._clock()
        max_wait = self.config.max_transfer_time

        self.lock.acquire(timeout=max_wait or None)
        self.storage.cleanup_temp_files()

        old_document = self.storage.load_document()
        current = TokenData.from_document(old_document, str(self.storage.token_file))

        now = self._clock()
        if not force and not current.refresh_due(now, self.config.early_refresh):
            logger.debug(
                f"Token not due for refresh until "
                f"{current.refresh_threshold(now, self.config.early_refresh):.0f}"
            )
            return None

        credential = load_credential(self.config.path(self.config.credential_file))
        body = TokenRequestBody.refresh_token(
            client_id=credential.client_id,
            client_secret=credential.client_secret,
            refresh_token=current.refresh_token,
        )

        issued_at = int(self._clock())
        elapsed = self._clock() - start_time
        if max_wait and max_wait <= elapsed:
            raise TransferError(f"timeout: exceeded max wait time of {max_wait} seconds")

        transfer_budget = max_wait - elapsed if max_wait else 0
        text = self.client.exchange(body, timeout=transfer_budget)

        source = str(self.client.response_file or "token response")
        merged = merge_token_response(
            old_document, load_json_object(text, source, ValidationError), issued_at, source
        )
        token = TokenData.from_document(merged, source)

        self.storage.commit(token)
        logger.info(f"Token refreshed, expires at {token.expires_at.isoformat()}")
        return token
