"""
Configuration for the OAuth bearer token tool.

This module provides the configuration value passed into every component,
the duration parser used by the command-line options, and the loader for
the client credential file.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from .exceptions import ConfigError
from .validators import validate_credential

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r"(\d+)([sm]?)")
CREDENTIAL_LINE_PATTERN = re.compile(r"\s*(\w+)\s*=\s*(.*?)\s*")


def parse_duration(value: str) -> int:
    """
    Parse a duration with an optional unit suffix.

    Args:
        value: Digits optionally followed by 's' (seconds) or 'm' (minutes)

    Returns:
        Number of seconds

    Raises:
        ConfigError: If the value is not a valid duration
    """
    match = DURATION_PATTERN.fullmatch(str(value))
    if not match:
        raise ConfigError(f"option value invalid time duration of {value}")

    amount, unit = match.groups()
    return int(amount) * 60 if unit == "m" else int(amount)


def urlencode_value(value: str) -> str:
    """Percent-encode everything except unreserved characters."""
    return quote(value, safe="-_~.")


@dataclass(frozen=True)
class Credential:
    """
    OAuth client credential.

    Attributes:
        client_id: OAuth client ID
        client_secret: OAuth client secret
        scope: Space-delimited list of scopes to request
    """

    client_id: str
    client_secret: str
    scope: str


def load_credential(path: Path) -> Credential:
    """
    Load a key=value credential file.

    Lines that are not key=value pairs (including '#' comments) are ignored.
    Whitespace around keys and values is trimmed.

    Raises:
        ConfigError: If the file is missing or unreadable
        ValidationError: If a credential field is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"failed reading credential: {path} doesn't exist!")

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"failed reading credential {path}: {e}") from e

    values = {}
    for line in lines:
        if line.lstrip().startswith("#"):
            continue
        match = CREDENTIAL_LINE_PATTERN.fullmatch(line)
        if match:
            key, value = match.groups()
            values[key] = value

    fields = validate_credential(values, str(path))
    logger.debug(f"Loaded credential from {path}")
    return Credential(**fields)


@dataclass
class BearerConfig:
    """
    Configuration for the bearer token tool.

    All file names are resolved relative to ``datadir``.

    Attributes:
        datadir: Directory holding the data files
        credential_file: Client credential (key=value)
        token_file: Token record (JSON)
        config_file: Bearer config line for the HTTP client
        lock_file: Advisory lock target
        temp_file: Temporary name for the bearer config (and raw responses)
        temp_file_2: Temporary name for the token record
        url_file: Interactive authorization URL, for manual fallback
        authorization_url: Provider authorization endpoint
        token_url: Provider token endpoint
        callback_host: Loopback host for the redirect listener
        callback_port: Port for the redirect listener
        callback_timeout: Seconds to wait for the redirect (None waits forever)
        authorization_transfer_timeout: Transfer budget for the code exchange
        early_refresh: Refresh this many seconds before expiry
        max_transfer_time: Shared lock-wait and transfer budget for refresh (0 = unbounded)
        rename_timeout: Seconds to keep retrying each commit rename
        transfer_retries: Retries for transient transfer failures
        verbose: Wire-level logging of the token transfer
    """

    datadir: Path = Path(".")

    credential_file: str = "credential.txt"
    token_file: str = "token.json"
    config_file: str = "bearer.cfg"
    lock_file: str = "token.lock"
    temp_file: str = "token.tmp"
    temp_file_2: str = "token.tmp.2"
    url_file: str = "auth-url.txt"

    authorization_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://accounts.google.com/o/oauth2/token"

    callback_host: str = "localhost"
    callback_port: int = 7777
    callback_timeout: Optional[int] = None

    authorization_transfer_timeout: int = 300
    early_refresh: int = 5 * 60
    max_transfer_time: int = 5 * 60
    rename_timeout: int = 60
    transfer_retries: int = 10

    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.datadir = Path(self.datadir)

        if not isinstance(self.callback_port, int) or not (
            0 <= self.callback_port <= 65535
        ):
            raise ConfigError(
                f"callback_port must be between 0 and 65535, got {self.callback_port}"
            )

        for name in (
            "authorization_transfer_timeout",
            "early_refresh",
            "max_transfer_time",
            "rename_timeout",
            "transfer_retries",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} cannot be negative")

        if self.callback_timeout is not None and self.callback_timeout <= 0:
            raise ConfigError("callback_timeout must be positive")

    def path(self, name: str) -> Path:
        """Resolve a data file name against the data directory."""
        return self.datadir / name
