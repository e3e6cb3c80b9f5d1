"""
Click command-line drivers.

bearer-new runs the interactive authorization flow once. bearer-refresh is
meant to run before every use of the token:

    bearer-refresh && curl -sS -K bearer.cfg https://www.googleapis.com/gmail/...

Both commands report failures through one handler that maps the exception
class to the process exit status.
"""

import functools
import logging
import sys
from pathlib import Path

import click

from .config import BearerConfig, parse_duration
from .coordinator import AuthorizationCoordinator
from .exceptions import ConfigError, OAuthBearerError
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


class DurationParamType(click.ParamType):
    """Duration in seconds, with optional 's' or 'm' suffix."""

    name = "duration"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        try:
            return parse_duration(value)
        except ConfigError as e:
            self.fail(str(e), param, ctx)


DURATION = DurationParamType()


def setup_logging(verbose: bool) -> None:
    """Configure logging; verbose also traces the HTTP transfer."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    if verbose:
        logging.getLogger("urllib3").setLevel(logging.DEBUG)


def print_error(message: str) -> None:
    """Print error message to stderr."""
    click.secho(f"Error: {message}", fg="red", err=True)


def handle_errors(func):
    """Run a command, turning bearer errors into a diagnostic and exit status."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OAuthBearerError as e:
            logger.debug("Command failed", exc_info=True)
            print_error(str(e))
            sys.exit(e.exit_code)
        except OSError as e:
            logger.debug("Command failed", exc_info=True)
            print_error(str(e))
            sys.exit(1)

    return wrapper


datadir_option = click.option(
    "--datadir",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    envvar="OAUTH_BEARER_DATADIR",
    show_default=True,
    help="The directory for the data files.",
)
verbose_option = click.option(
    "--verbose", "-v", is_flag=True, help="Talkative to stderr, including the HTTP transfer."
)


@click.command()
@datadir_option
@click.option(
    "--callback-timeout",
    type=DURATION,
    default=None,
    help="Give up if the browser has not returned within this duration.",
)
@verbose_option
@handle_errors
def bearer_new(datadir: Path, callback_timeout, verbose: bool) -> None:
    """
    Request new OAuth token information from the provider.

    The token info is written to token.json. The bearer token is formatted
    as the curl option --oauth2-bearer and written to bearer.cfg, which can
    be passed to curl with -K.
    """
    setup_logging(verbose)
    config = BearerConfig(
        datadir=datadir, callback_timeout=callback_timeout or None, verbose=verbose
    )
    AuthorizationCoordinator(config).run_authorization_flow()


@click.command()
@datadir_option
@click.option(
    "--early",
    type=DURATION,
    default=BearerConfig.early_refresh,
    show_default=True,
    help="Refresh this long before expiration (0 disables early refresh).",
)
@click.option("--force", is_flag=True, help="Refresh the token regardless of expiration.")
@click.option(
    "--max-transfer-time",
    type=DURATION,
    default=BearerConfig.max_transfer_time,
    show_default=True,
    help="Maximum time for the lock wait and the transfer together (0 disables).",
)
@verbose_option
@handle_errors
def bearer_refresh(
    datadir: Path, early: int, force: bool, max_transfer_time: int, verbose: bool
) -> None:
    """
    Refresh the token information in token.json if it is close to expiry.

    If the bearer token is not close to expiration no transfer takes place,
    nothing is shown and the command exits successfully. Otherwise the new
    bearer token is written to bearer.cfg as well.
    """
    setup_logging(verbose)
    config = BearerConfig(
        datadir=datadir,
        early_refresh=early,
        max_transfer_time=max_transfer_time,
        verbose=verbose,
    )
    RefreshScheduler(config).refresh(force=force)
