"""
OAuth callback listener for the authorization code flow.

The provider redirects the user's browser to a loopback address once the
user approves access. This module listens on that address for exactly one
connection, reads the request headers, answers with a fixed page and pulls
the authorization code out of the request line.

The listener is deliberately minimal: it never parses headers or bodies and
shuts down after the one exchange.
"""

import logging
import re
import socket
from typing import Optional
from urllib.parse import unquote_plus

from .exceptions import ProtocolError

logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"
RECV_SIZE = 1024

# Google authorization codes look like "4/0Adeu5B...".
CODE_PATTERN = re.compile(r"GET [^\r\n]*?[?&]code=([0-9]/[0-9A-Za-z_-]+)")
ERROR_PATTERN = re.compile(r"GET [^\r\n]*?[?&]error=([^&\s]+)")

RESPONSE_BODY = b"Close this tab and return to the console that is running bearer-new."
RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/plain\r\n"
    b"Content-Length: " + str(len(RESPONSE_BODY)).encode() + b"\r\n"
    b"Connection: close\r\n"
    b"\r\n" + RESPONSE_BODY
)


def extract_authorization_code(request: bytes) -> str:
    """
    Extract the authorization code from a raw HTTP request.

    The request is percent-decoded before matching, so codes sent as
    ``4%2F0A...`` and ``4/0A...`` are treated alike.

    Raises:
        ProtocolError: If the request line carries no valid code
    """
    text = unquote_plus(request.decode("latin-1"))

    match = CODE_PATTERN.match(text)
    if match:
        return match.group(1)

    error = ERROR_PATTERN.match(text)
    if error:
        raise ProtocolError(
            f"authorization code not found, provider returned error: {error.group(1)}"
        )

    logger.debug(f"Callback request: {text!r}")
    raise ProtocolError("authorization code not found")


class OAuthCallbackServer:
    """
    One-shot loopback listener for the OAuth redirect.

    Usage:
        with OAuthCallbackServer("localhost", 7777) as server:
            ...  # send the user to the authorization URL
            code = server.wait_for_code()
    """

    def __init__(self, host: str = "localhost", port: int = 7777):
        """
        Initialize callback server.

        Args:
            host: Loopback host to bind
            port: Port to bind (0 picks a free port)
        """
        self.host = host
        self.port = port
        self._sock: Optional[socket.socket] = None

    @property
    def redirect_uri(self) -> str:
        """Redirect URI for this listener (e.g., http://localhost:7777)."""
        return f"http://{self.host}:{self.port}"

    def start(self) -> None:
        """
        Bind and listen.

        The address is bound exclusively so that no other program can share
        the port and intercept the redirect.

        Raises:
            OSError: If the address cannot be bound
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if hasattr(socket, "SO_EXCLUSIVEADDRUSE"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)
            sock.bind((self.host, self.port))
            sock.listen(1)
        except OSError:
            sock.close()
            raise

        self._sock = sock
        self.port = sock.getsockname()[1]
        logger.debug(f"Listening for OAuth callback on {self.host}:{self.port}")

    def stop(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def wait_for_code(self, timeout: Optional[float] = None) -> str:
        """
        Accept one connection and return the authorization code it carries.

        Args:
            timeout: Maximum seconds to wait for the browser (None waits forever)

        Returns:
            Authorization code

        Raises:
            ProtocolError: If the request is incomplete, has no valid code,
                or no connection arrives within timeout
        """
        if self._sock is None:
            self.start()

        logger.info(f"waiting for authorization code on {self.host}:{self.port}")

        self._sock.settimeout(timeout)
        try:
            client, address = self._sock.accept()
        except socket.timeout as e:
            raise ProtocolError(
                f"no authorization callback received within {timeout} seconds"
            ) from e
        finally:
            self.stop()

        with client:
            client.settimeout(timeout)
            data = self._read_headers(client)
            self._send_response(client)

        logger.debug(f"Callback connection from {address[0]}:{address[1]}")
        code = extract_authorization_code(data)
        logger.info("received authorization code")
        return code

    def _read_headers(self, client: socket.socket) -> bytes:
        data = b""
        while HEADER_TERMINATOR not in data:
            try:
                chunk = client.recv(RECV_SIZE)
            except socket.timeout as e:
                raise ProtocolError("timed out reading the callback request") from e
            if not chunk:
                raise ProtocolError(
                    "connection closed before the callback request was complete"
                )
            data += chunk
        return data

    def _send_response(self, client: socket.socket) -> None:
        # The browser tab may already be gone; that is fine.
        try:
            client.sendall(RESPONSE)
            client.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Could not deliver callback response: {e}")

    def __enter__(self) -> "OAuthCallbackServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
