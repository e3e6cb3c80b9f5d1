"""Tests for the token exchange client."""

import json
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest import mock

import pytest
import requests

from oauth_bearer.exceptions import ProtocolError, TransferError
from oauth_bearer.token_client import TokenExchangeClient, TokenRequestBody

TOKEN_URL = "https://accounts.google.com/o/oauth2/token"
SLOW_PAYLOAD = json.dumps(
    {"access_token": "ya29.A0", "expires_in": 3599, "token_type": "Bearer"}
).encode()


@pytest.fixture
def response_file(tmp_path):
    return tmp_path / "token.tmp"


@pytest.fixture
def sleep():
    return mock.Mock()


@pytest.fixture
def client(response_file, sleep):
    return TokenExchangeClient(TOKEN_URL, response_file=response_file, max_retries=3, sleep=sleep)


@pytest.fixture
def body():
    return TokenRequestBody.refresh_token(
        client_id="abc.apps.googleusercontent.com", client_secret="shh", refresh_token="1//09"
    )


class TestTokenRequestBody:
    """Tests for TokenRequestBody."""

    def test_authorization_code_body(self):
        """The authorization code grant carries code, client and redirect URI."""
        body = TokenRequestBody.authorization_code(
            code="4/0ATx3",
            client_id="abc.apps.googleusercontent.com",
            client_secret="shh",
            redirect_uri="http://localhost:7777",
        )

        assert body.encode() == (
            "code=4%2F0ATx3&"
            "client_id=abc.apps.googleusercontent.com&"
            "client_secret=shh&"
            "redirect_uri=http%3A%2F%2Flocalhost%3A7777&"
            "grant_type=authorization_code"
        )

    def test_refresh_token_body(self, body):
        """The refresh grant carries client and refresh token."""
        assert body.encode() == (
            "client_id=abc.apps.googleusercontent.com&"
            "client_secret=shh&"
            "refresh_token=1%2F%2F09&"
            "grant_type=refresh_token"
        )

    def test_encodes_reserved_characters(self):
        """Everything but unreserved characters is percent-encoded."""
        body = TokenRequestBody.refresh_token("a b", "x&y=z", "~-._")
        assert body.encode() == (
            "client_id=a%20b&client_secret=x%26y%3Dz&refresh_token=~-._&grant_type=refresh_token"
        )


class TestTokenExchangeClient:
    """Tests for TokenExchangeClient class."""

    @mock.patch("requests.post")
    def test_exchange_success(self, mock_post, client, body, response_file, make_response, token_response):
        """A 2xx reply returns the raw body unvalidated."""
        mock_post.return_value = make_response(200, token_response)

        text = client.exchange(body, timeout=0)

        assert '"access_token": "ya29.A0"' in text
        assert response_file.read_text() == text
        assert client.last_response_body == text

        call_args = mock_post.call_args
        assert call_args[0][0] == TOKEN_URL
        assert call_args[1]["data"] == body.encode()
        assert call_args[1]["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
        assert call_args[1]["timeout"] is None
        assert call_args[1]["stream"] is True
        mock_post.return_value.close.assert_called_once()

    @mock.patch("requests.post")
    def test_exchange_does_not_validate_body(self, mock_post, client, body, make_response):
        """The body of a 2xx reply is returned even if it is not JSON."""
        mock_post.return_value = make_response(200, "not json")
        assert client.exchange(body) == "not json"

    @mock.patch("requests.post")
    def test_exchange_passes_remaining_budget_as_timeout(self, mock_post, response_file, body, make_response):
        """With a budget, each attempt may use only what remains of it."""
        clock = mock.Mock(side_effect=[100.0, 130.0, 131.0])
        client = TokenExchangeClient(
            TOKEN_URL, response_file=response_file, clock=clock, sleep=mock.Mock()
        )
        mock_post.return_value = make_response(200, "{}")

        client.exchange(body, timeout=60)

        assert mock_post.call_args[1]["timeout"] == pytest.approx(30.0)

    @mock.patch("requests.post")
    def test_exchange_clears_previous_response(self, mock_post, client, body, response_file):
        """A failed attempt never leaves an older response in place."""
        response_file.write_text('{"access_token": "stale"}')
        client.last_response_body = '{"access_token": "stale"}'
        mock_post.side_effect = requests.RequestException("bad request setup")

        with pytest.raises(TransferError):
            client.exchange(body)

        assert not response_file.exists()
        assert client.last_response_body is None

    @mock.patch("requests.post")
    def test_exchange_400_reports_provider_error(self, mock_post, client, body, make_response):
        """A 400 reply surfaces the provider's error and description."""
        mock_post.return_value = make_response(
            400, {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
        )

        with pytest.raises(TransferError) as exc_info:
            client.exchange(body)

        error = exc_info.value
        assert error.status_code == 400
        assert error.error == "invalid_grant"
        assert error.error_description == "Token has been expired or revoked."
        assert "invalid_grant" in str(error)
        mock_post.assert_called_once()

    @mock.patch("requests.post")
    def test_exchange_401_without_description(self, mock_post, client, body, make_response):
        """A 401 reply with only an error code is reported."""
        mock_post.return_value = make_response(401, {"error": "invalid_client"})

        with pytest.raises(TransferError) as exc_info:
            client.exchange(body)

        assert exc_info.value.error == "invalid_client"
        assert exc_info.value.error_description is None

    @mock.patch("requests.post")
    def test_exchange_400_unparsed_body(self, mock_post, client, body, response_file, make_response):
        """An unparsable error body degrades to pointing at the saved body."""
        mock_post.return_value = make_response(400, "<html>Bad Request</html>")

        with pytest.raises(TransferError) as exc_info:
            client.exchange(body)

        assert exc_info.value.status_code == 400
        assert exc_info.value.error is None
        assert response_file.read_text() == "<html>Bad Request</html>"

    @mock.patch("requests.post")
    def test_exchange_403_is_not_parsed(self, mock_post, client, body, make_response):
        """Other non-2xx statuses fail without error parsing."""
        mock_post.return_value = make_response(403, {"error": "access_denied"})

        with pytest.raises(TransferError) as exc_info:
            client.exchange(body)

        assert exc_info.value.status_code == 403
        assert exc_info.value.error is None

    @mock.patch("requests.post")
    @pytest.mark.parametrize("status", [0, 99, 1000])
    def test_exchange_malformed_status(self, mock_post, status, client, body, make_response):
        """A status that is not a 3-digit code is a protocol error."""
        mock_post.return_value = make_response(status, "")

        with pytest.raises(ProtocolError, match="malformed http response code"):
            client.exchange(body)

    @mock.patch("requests.post")
    def test_exchange_retries_server_errors(self, mock_post, client, body, sleep, make_response):
        """Transient statuses are retried with exponential backoff."""
        mock_post.side_effect = [
            make_response(503, ""),
            make_response(500, ""),
            make_response(200, "{}"),
        ]

        assert client.exchange(body) == "{}"

        assert mock_post.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    @mock.patch("requests.post")
    def test_exchange_retries_network_errors(self, mock_post, client, body, sleep, make_response):
        """Connection errors and timeouts are retried."""
        mock_post.side_effect = [
            requests.ConnectionError("reset"),
            requests.Timeout("slow"),
            make_response(200, "{}"),
        ]

        assert client.exchange(body) == "{}"
        assert mock_post.call_count == 3

    @mock.patch("requests.post")
    def test_exchange_gives_up_after_max_retries(self, mock_post, client, body, make_response):
        """After the retry budget a transient status is reported as failure."""
        mock_post.return_value = make_response(503, "")

        with pytest.raises(TransferError) as exc_info:
            client.exchange(body)

        assert mock_post.call_count == 4
        assert exc_info.value.status_code == 503

    @mock.patch("requests.post")
    def test_exchange_network_failure_after_retries(self, mock_post, client, body):
        """Persistent network errors fail after the retry budget."""
        mock_post.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(TransferError, match="after 4 attempts"):
            client.exchange(body)

    @mock.patch("requests.post")
    def test_exchange_stops_retrying_at_deadline(self, mock_post, response_file, body):
        """Retries never run past the time budget."""
        now = {"t": 0.0}
        client = TokenExchangeClient(
            TOKEN_URL,
            response_file=response_file,
            max_retries=10,
            clock=lambda: now["t"],
            sleep=lambda seconds: now.update(t=now["t"] + seconds),
        )
        mock_post.side_effect = requests.Timeout("slow")

        with pytest.raises(TransferError, match="timeout"):
            client.exchange(body, timeout=5)

        # attempts at t=0, 1, 3; the next backoff (4s) would end past t=5
        assert mock_post.call_count == 3

    @mock.patch("requests.post")
    def test_exchange_client_error_not_retried(self, mock_post, client, body, make_response):
        """4xx replies other than 408/429 are not retried."""
        mock_post.return_value = make_response(400, {"error": "invalid_request"})

        with pytest.raises(TransferError):
            client.exchange(body)

        mock_post.assert_called_once()

    def test_from_config(self, config):
        """from_config wires the token URL, response file and retries."""
        client = TokenExchangeClient.from_config(config)

        assert client.token_url == config.token_url
        assert client.response_file == config.path("token.tmp")
        assert client.max_retries == 10

    @mock.patch("requests.post")
    def test_exchange_closes_retried_responses(self, mock_post, client, body, make_response):
        """Every response is closed, including the ones that get retried."""
        responses = [make_response(503, ""), make_response(502, ""), make_response(200, "{}")]
        mock_post.side_effect = responses

        client.exchange(body)

        for response in responses:
            response.close.assert_called_once()

    @mock.patch("requests.post")
    def test_exchange_body_read_past_deadline(self, mock_post, response_file, body):
        """A body still arriving when the budget runs out fails the transfer."""
        response = mock.Mock(status_code=200, encoding="utf-8")
        response.iter_content.return_value = iter([b"{", b'"access_token"', b"}"])
        mock_post.return_value = response
        client = TokenExchangeClient(
            TOKEN_URL,
            response_file=response_file,
            clock=mock.Mock(side_effect=[0.0, 0.0, 0.5, 2.0]),
            sleep=mock.Mock(),
        )

        with pytest.raises(TransferError, match="timeout"):
            client.exchange(body, timeout=1)

        response.close.assert_called_once()
        assert not response_file.exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    @mock.patch("requests.post")
    def test_exchange_response_file_is_private(
        self, mock_post, client, body, response_file, make_response, token_response
    ):
        """The saved response holds tokens and is user read/write only."""
        mock_post.return_value = make_response(200, token_response)

        client.exchange(body)

        assert (response_file.stat().st_mode & 0o777) == 0o600


class _SlowTokenHandler(BaseHTTPRequestHandler):
    """Answers 200 at once, then sends the token body a byte at a time."""

    byte_interval = 0.2

    def do_POST(self):
        self.rfile.read(int(self.headers["Content-Length"]))
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(SLOW_PAYLOAD)))
        self.end_headers()
        try:
            for value in SLOW_PAYLOAD:
                self.wfile.write(bytes([value]))
                self.wfile.flush()
                time.sleep(self.byte_interval)
        except OSError:
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def slow_token_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _SlowTokenHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/token"
    server.shutdown()
    server.server_close()


class TestSlowTokenEndpoint:
    """Tests against a live endpoint that trickles its response."""

    def test_budget_bounds_slow_body(self, slow_token_server, response_file, body):
        """A slowly sent body cannot stretch one attempt past the budget."""
        client = TokenExchangeClient(slow_token_server, response_file=response_file, max_retries=0)

        start = time.monotonic()
        with pytest.raises(TransferError, match="timeout"):
            client.exchange(body, timeout=1)
        elapsed = time.monotonic() - start

        assert elapsed < 3
