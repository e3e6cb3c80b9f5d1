"""
Token exchange client.

This module posts token requests (authorization code or refresh token
grant) to the provider's token endpoint and returns the raw response body.
The body is not validated here; callers check it against the token field
grammars once the absolute expiry has been added.
"""

import http.client
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import requests

from .config import urlencode_value
from .exceptions import OAuthBearerError, ProtocolError, TransferError
from .token_storage import write_private
from .validators import load_json_object, validate_error_response

logger = logging.getLogger(__name__)

# Statuses worth retrying, the same set curl's --retry treats as transient.
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Read the body a byte at a time; a larger read blocks until it is filled,
# which would let a trickling server run past the deadline.
BODY_READ_SIZE = 1


@dataclass(frozen=True)
class TokenRequestBody:
    """
    URL-encoded form body for the token endpoint.

    Use the ``authorization_code`` or ``refresh_token`` constructors.
    """

    grant_type: str
    fields: Dict[str, str]

    @classmethod
    def authorization_code(
        cls, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> "TokenRequestBody":
        return cls(
            grant_type="authorization_code",
            fields={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
            },
        )

    @classmethod
    def refresh_token(
        cls, client_id: str, client_secret: str, refresh_token: str
    ) -> "TokenRequestBody":
        return cls(
            grant_type="refresh_token",
            fields={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
        )

    def encode(self) -> str:
        pairs = list(self.fields.items()) + [("grant_type", self.grant_type)]
        return "&".join(f"{key}={urlencode_value(value)}" for key, value in pairs)


@contextmanager
def _wire_trace(enabled: bool):
    """Temporarily dump HTTP traffic to stdout, like a verbose HTTP client."""
    if not enabled:
        yield
        return
    previous = http.client.HTTPConnection.debuglevel
    http.client.HTTPConnection.debuglevel = 1
    try:
        yield
    finally:
        http.client.HTTPConnection.debuglevel = previous


class TokenExchangeClient:
    """
    Synchronous client for the provider's token endpoint.

    Transient failures (network errors, timeouts, 408/429/5xx) are retried
    with exponential backoff up to ``max_retries`` times, never beyond the
    time budget of the call.
    """

    def __init__(
        self,
        token_url: str,
        response_file: Optional[Path] = None,
        max_retries: int = 10,
        verbose: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize token exchange client.

        Args:
            token_url: Provider token endpoint
            response_file: Where the raw response body is kept for diagnostics
            max_retries: Retries for transient failures
            verbose: Dump HTTP traffic
            clock: Monotonic clock used for the time budget
            sleep: Sleep function used between retries
        """
        self.token_url = token_url
        self.response_file = Path(response_file) if response_file else None
        self.max_retries = max_retries
        self.verbose = verbose
        self._clock = clock
        self._sleep = sleep
        self.last_response_body: Optional[str] = None

    @classmethod
    def from_config(cls, config) -> "TokenExchangeClient":
        return cls(
            token_url=config.token_url,
            response_file=config.path(config.temp_file),
            max_retries=config.transfer_retries,
            verbose=config.verbose,
        )

    def _clear_response(self) -> None:
        self.last_response_body = None
        if self.response_file is not None:
            try:
                self.response_file.unlink()
            except FileNotFoundError:
                pass

    def _store_response(self, body: str) -> None:
        self.last_response_body = body
        if self.response_file is not None:
            write_private(self.response_file, body)

    def _read_body(
        self, response: requests.Response, deadline: Optional[float], timeout: float
    ) -> str:
        """Read the whole response body, failing once the deadline has passed."""
        chunks = []
        for chunk in response.iter_content(chunk_size=BODY_READ_SIZE):
            chunks.append(chunk)
            if deadline is not None and self._clock() > deadline:
                raise TransferError(f"timeout: token request exceeded {timeout} seconds")
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")

    def _post(
        self, body: TokenRequestBody, deadline: Optional[float], timeout: float
    ) -> Tuple[int, str]:
        """
        POST once, retrying transient failures within the deadline.

        Returns:
            HTTP status and body of the last response
        """
        delay = 1.0
        attempt = 0

        while True:
            remaining = None
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise TransferError(
                        f"timeout: token request exceeded {timeout} seconds"
                    )

            error: Optional[Exception] = None
            status = None
            text = ""
            try:
                with _wire_trace(self.verbose):
                    response = requests.post(
                        self.token_url,
                        data=body.encode(),
                        headers={"Content-Type": "application/x-www-form-urlencoded"},
                        timeout=remaining,
                        stream=True,
                    )
                    try:
                        status = response.status_code
                        text = self._read_body(response, deadline, timeout)
                    finally:
                        response.close()
            except (
                requests.ConnectionError,
                requests.Timeout,
                requests.exceptions.ChunkedEncodingError,
            ) as e:
                error = e
            except requests.RequestException as e:
                raise TransferError(f"token request failed: {e}") from e

            transient = error is not None or status in TRANSIENT_STATUS_CODES
            if not transient or attempt >= self.max_retries:
                if error is not None:
                    raise TransferError(
                        f"token request failed after {attempt + 1} attempts: {error}"
                    ) from error
                return status, text

            if deadline is not None and self._clock() + delay >= deadline:
                if error is not None:
                    raise TransferError(
                        f"timeout: token request exceeded {timeout} seconds: {error}"
                    ) from error
                return status, text

            reason = error if error is not None else f"HTTP {status}"
            logger.warning(
                f"Transient token request failure ({reason}), "
                f"retrying in {delay:g}s ({attempt + 1}/{self.max_retries})"
            )
            self._sleep(delay)
            delay *= 2
            attempt += 1

    def exchange(self, body: TokenRequestBody, timeout: float = 0) -> str:
        """
        Request token data from the token endpoint.

        The time budget covers every attempt, including reading the body.

        Args:
            body: Token request form
            timeout: Overall time budget in seconds (0 means unbounded)

        Returns:
            Raw response body of a 2xx reply

        Raises:
            ProtocolError: If the HTTP status is not a 3-digit code
            TransferError: If the request failed, ran out of time or the
                reply is not 2xx
        """
        self._clear_response()

        logger.info("requesting token data")
        deadline = self._clock() + timeout if timeout else None
        status, text = self._post(body, deadline, timeout)

        if not isinstance(status, int) or not 100 <= status <= 999:
            raise ProtocolError(f"malformed http response code: {status!r}")

        self._store_response(text)

        if 200 <= status < 300:
            logger.info("received token data")
            return text

        logger.error(f"http response code: {status}")
        error = None
        error_description = None
        if status in (400, 401):
            try:
                source = "token error response"
                info = validate_error_response(load_json_object(text, source), source)
                error = info["error"]
                error_description = info["error_description"] or None
            except OAuthBearerError as e:
                logger.debug(f"Could not parse error response: {e}")

        if error is not None:
            logger.error(f"oauth error code: {error}")
            if error_description:
                logger.error(f"oauth error message: {error_description}")
        elif text:
            where = self.response_file if self.response_file is not None else "last_response_body"
            logger.error(f"http response body: (refer to {where})")

        message = f"unexpected http response code {status} != 2xx OK"
        if error is not None:
            message += f": {error}"
            if error_description:
                message += f" ({error_description})"

        raise TransferError(
            message, status_code=status, error=error, error_description=error_description
        )
