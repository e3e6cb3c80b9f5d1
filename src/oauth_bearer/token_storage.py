"""
Token storage for the OAuth bearer token tool.

This module provides the token record and the commit protocol that
persists it. Two files are kept:

- the token record (token.json), the full token response plus the absolute
  expiry time, keys sorted
- the bearer config (bearer.cfg), one line ``--oauth2-bearer <token>`` that
  is passed to the HTTP client as a config file

Both are written under temporary names and renamed into place, so readers
only ever see a complete old or complete new file. The bearer config is
renamed first. A crash between the two renames leaves a new bearer config
next to the old token record; the old record carries an earlier expiry, so
the next refresh happens sooner rather than later.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .exceptions import CommitTimeoutError, ConfigError
from .validators import (
    TOKEN_RESPONSE_FIELDS,
    load_json_object,
    validate_field,
    validate_token_response,
)

logger = logging.getLogger(__name__)

RENAME_RETRY_INTERVAL = 0.2


def write_private(path: Path, text: str) -> None:
    """Write text to a file readable only by the user (600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
        f.write(text)
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions on {path}: {e}")


@dataclass
class TokenData:
    """
    Stored OAuth token data.

    Attributes:
        access_token: Short-lived bearer token for API calls
        expires_in: Token lifetime in seconds, as sent by the provider
        refresh_token: Long-lived token for obtaining new access tokens
        scope: Granted OAuth scopes
        token_type: Token type (case-insensitive "bearer")
        expires_in__absolute_utc: Unix time the access token expires, computed
            locally from the request issue time; None if never computed
    """

    access_token: str
    expires_in: int
    refresh_token: str
    scope: str
    token_type: str
    expires_in__absolute_utc: Optional[int] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        """Expiration datetime (timezone-aware UTC), if known."""
        if self.expires_in__absolute_utc is None:
            return None
        return datetime.fromtimestamp(self.expires_in__absolute_utc, tz=timezone.utc)

    def refresh_threshold(self, now: float, early: int) -> float:
        """
        Time from which a refresh is due.

        Without an absolute expiry the token is treated as already expired.
        """
        if self.expires_in__absolute_utc is None:
            return now
        return self.expires_in__absolute_utc - early

    def refresh_due(self, now: float, early: int) -> bool:
        return now >= self.refresh_threshold(now, early)

    @property
    def bearer_config_line(self) -> str:
        """Bearer config line for the HTTP client."""
        return f"--oauth2-bearer {self.access_token}"

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        The absolute expiry is left out while unknown.
        """
        data = {
            "access_token": self.access_token,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "token_type": self.token_type,
        }
        if self.expires_in__absolute_utc is not None:
            data["expires_in__absolute_utc"] = self.expires_in__absolute_utc
        return dict(sorted(data.items()))

    @classmethod
    def from_document(cls, document: Mapping[str, Any], source: str) -> "TokenData":
        """
        Create TokenData from a token response or token record.

        Args:
            document: Parsed JSON object
            source: Where the document came from (used in error messages)

        Raises:
            ValidationError: If any token field fails its grammar
        """
        fields = validate_token_response(document, source)
        absolute = fields["expires_in__absolute_utc"]
        return cls(
            access_token=fields["access_token"],
            expires_in=int(fields["expires_in"]),
            refresh_token=fields["refresh_token"],
            scope=fields["scope"],
            token_type=fields["token_type"],
            expires_in__absolute_utc=int(absolute) if absolute else None,
        )


def stamp_absolute_expiry(
    document: Mapping[str, Any], issued_at: int, source: str
) -> Dict[str, Any]:
    """
    Add expires_in__absolute_utc to a token response.

    Args:
        document: Token response as sent by the provider
        issued_at: Unix time the token request was issued
        source: Where the document came from (used in error messages)

    Raises:
        ValidationError: If expires_in is missing or malformed
    """
    expires_in = validate_field(
        "expires_in", document.get("expires_in"), TOKEN_RESPONSE_FIELDS["expires_in"], source
    )
    stamped = dict(document)
    stamped["expires_in__absolute_utc"] = issued_at + int(expires_in)
    return stamped


def rename_with_timeout(
    src: Path,
    dst: Path,
    timeout: float,
    interval: float = RENAME_RETRY_INTERVAL,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Rename src onto dst, retrying until timeout.

    On Windows a file cannot be replaced while another program (e.g. the HTTP
    client reading the bearer config) has it open, so a failed rename is
    retried every ``interval`` seconds. A timeout of 0 tries once.

    Raises:
        CommitTimeoutError: If the rename did not succeed within timeout
    """
    stop = clock() + timeout
    while True:
        try:
            os.replace(src, dst)
            return
        except OSError as e:
            if clock() >= stop:
                raise CommitTimeoutError(f"timed out: renaming {src} => {dst}: {e}") from e
            logger.debug(f"Rename {src} => {dst} failed ({e}), retrying")
            sleep(interval)


class TokenStorage:
    """
    File-based storage for the token record and bearer config.

    The token record is plaintext JSON and the bearer config a single line;
    both are readable by other tools that only need the current token.
    """

    def __init__(
        self,
        token_file: Path,
        config_file: Path,
        temp_file: Path,
        temp_file_2: Path,
        rename_timeout: float = 60,
    ):
        """
        Initialize token storage.

        Args:
            token_file: Path of the token record
            config_file: Path of the bearer config
            temp_file: Temporary path for the bearer config
            temp_file_2: Temporary path for the token record
            rename_timeout: Seconds to keep retrying each rename
        """
        self.token_file = Path(token_file)
        self.config_file = Path(config_file)
        self.temp_file = Path(temp_file)
        self.temp_file_2 = Path(temp_file_2)
        self.rename_timeout = rename_timeout

    @classmethod
    def from_config(cls, config) -> "TokenStorage":
        """Create storage for the files named by a BearerConfig."""
        return cls(
            token_file=config.path(config.token_file),
            config_file=config.path(config.config_file),
            temp_file=config.path(config.temp_file),
            temp_file_2=config.path(config.temp_file_2),
            rename_timeout=config.rename_timeout,
        )

    def cleanup_temp_files(self) -> None:
        """Remove temporary files left behind by an aborted run."""
        for path in (self.temp_file, self.temp_file_2):
            try:
                path.unlink()
                logger.debug(f"Removed leftover temporary file {path}")
            except FileNotFoundError:
                pass

    def exists(self) -> bool:
        return self.token_file.exists()

    def load_document(self) -> Dict[str, Any]:
        """
        Load the raw token record.

        Raises:
            ConfigError: If the file is missing or not a JSON object
        """
        if not self.token_file.exists():
            raise ConfigError(
                f"failed reading token info: {self.token_file} doesn't exist!"
            )

        try:
            text = self.token_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"failed reading token info {self.token_file}: {e}") from e

        return load_json_object(text, str(self.token_file))

    def load(self) -> TokenData:
        """
        Load and validate the token record.

        Raises:
            ConfigError: If the file is missing or not a JSON object
            ValidationError: If a token field fails its grammar
        """
        token = TokenData.from_document(self.load_document(), str(self.token_file))
        logger.debug(f"Tokens loaded from {self.token_file}")
        return token

    def commit(self, token_data: TokenData) -> None:
        """
        Replace the bearer config and token record with new data.

        Both files are written under their temporary names first, then renamed
        into place: bearer config first, token record second.

        Raises:
            CommitTimeoutError: If a rename does not succeed within rename_timeout
            OSError: If a temporary file cannot be written
        """
        write_private(self.temp_file, token_data.bearer_config_line + "\n")
        write_private(
            self.temp_file_2, json.dumps(token_data.to_dict(), indent=2, sort_keys=True) + "\n"
        )

        logger.info(f"updating {self.config_file.name} and {self.token_file.name}")

        rename_with_timeout(self.temp_file, self.config_file, self.rename_timeout)
        rename_with_timeout(self.temp_file_2, self.token_file, self.rename_timeout)

        logger.info(
            f"token data written to {self.config_file.name} and {self.token_file.name}"
        )
