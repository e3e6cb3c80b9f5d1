"""
Browser launchers for the interactive authorization step.

The launcher is picked once at startup for the running platform. Launching
is fire-and-forget: the engine never waits for the browser or looks at how
the launch went beyond logging a warning. The authorization URL is always
written to a file as well, so the user can paste it by hand.
"""

import logging
import os
import shutil
import subprocess
import sys
import threading
import webbrowser
from abc import ABC, abstractmethod
from typing import List, Optional

logger = logging.getLogger(__name__)


class BrowserLauncher(ABC):
    """Opens a URL in the user's browser without waiting for it."""

    @abstractmethod
    def open(self, url: str) -> None:
        """Start opening the URL. Must not block."""


class WindowsBrowserLauncher(BrowserLauncher):
    """
    Opens URLs through the Windows shell association.

    os.startfile hands the URL straight to ShellExecute, so no command
    interpreter sees the percent signs in it.
    """

    def open(self, url: str) -> None:
        os.startfile(url)


class CommandBrowserLauncher(BrowserLauncher):
    """Runs an opener command (e.g. xdg-open) as a detached child process."""

    def __init__(self, command: List[str]):
        self.command = command

    def open(self, url: str) -> None:
        subprocess.Popen(
            self.command + [url],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )


class WebbrowserLauncher(BrowserLauncher):
    """Falls back to the standard webbrowser module on a daemon thread."""

    def open(self, url: str) -> None:
        threading.Thread(target=webbrowser.open, args=(url,), daemon=True).start()


def select_launcher(platform: Optional[str] = None) -> BrowserLauncher:
    """
    Choose the browser launcher for a platform.

    Args:
        platform: Value like sys.platform (defaults to the running platform)
    """
    platform = platform or sys.platform

    if platform == "win32":
        return WindowsBrowserLauncher()
    if platform.startswith(("cygwin", "msys")) and shutil.which("cygstart"):
        return CommandBrowserLauncher(["cygstart"])
    if platform == "darwin":
        return CommandBrowserLauncher(["open"])
    if shutil.which("xdg-open"):
        return CommandBrowserLauncher(["xdg-open"])
    return WebbrowserLauncher()


def launch(launcher: BrowserLauncher, url: str) -> bool:
    """
    Open the URL with the launcher, logging instead of raising on failure.

    Returns:
        True if the launch was started
    """
    try:
        launcher.open(url)
        return True
    except OSError as e:
        logger.warning(f"Could not open browser automatically: {e}")
        return False
