"""Shared fixtures for bearer token tests."""

import json
from pathlib import Path
from unittest import mock

import pytest

from oauth_bearer.config import BearerConfig

CREDENTIAL_TEXT = """\
# Google OAuth client
client_id = abc.apps.googleusercontent.com
client_secret = shh
scope = https://mail.google.com/
"""

TOKEN_RESPONSE = {
    "access_token": "ya29.A0",
    "expires_in": 3599,
    "refresh_token": "1//09",
    "scope": "https://mail.google.com/",
    "token_type": "Bearer",
}


@pytest.fixture
def datadir(tmp_path: Path) -> Path:
    """Data directory with a credential file."""
    (tmp_path / "credential.txt").write_text(CREDENTIAL_TEXT)
    return tmp_path


@pytest.fixture
def config(datadir: Path) -> BearerConfig:
    """Configuration rooted at the temporary data directory."""
    return BearerConfig(datadir=datadir, callback_port=0, rename_timeout=1)


@pytest.fixture
def token_response() -> dict:
    """A valid token endpoint response."""
    return dict(TOKEN_RESPONSE)


@pytest.fixture
def make_response():
    """Factory for mock requests.Response objects."""

    def _make(status_code: int, body) -> mock.Mock:
        text = body if isinstance(body, str) else json.dumps(body)
        response = mock.Mock()
        response.status_code = status_code
        response.encoding = "utf-8"
        response.iter_content.side_effect = lambda chunk_size=1: iter([text.encode("utf-8")])
        return response

    return _make
