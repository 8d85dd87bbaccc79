"""Browser-based interactive login.

Pattern: Callback Race
-----------------------
One login attempt runs as follows:

  1. Start a ``CallbackListener`` on an ephemeral loopback port.
  2. Build ``<web_url>/auth/verify?mcp_callback=<callback url>`` and print it,
     so the human can open it by hand if no browser appears.
  3. Try to open the URL in the default browser.  This is best effort: a
     failure is logged and the attempt carries on.
  4. Wait for the listener's outcome, bounded by the login timeout.  The
     listener is closed before ``login()`` returns, whichever way it ends.

The listener is live before the browser opens, so the redirect can never
arrive ahead of it.  Callers must not run two attempts at once.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import webbrowser
from typing import Callable
from urllib.parse import quote

from rich.console import Console

from aphorist_mcp.auth.callback_listener import CallbackListener
from aphorist_mcp.auth.session import SessionState

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_TIMEOUT = 120.0

# stdout belongs to the MCP stdio transport.
_stderr_console = Console(stderr=True)


class LoginTimeoutError(Exception):
    """Raised when no valid callback arrives within the login timeout."""


class BrowserLaunchError(Exception):
    """The browser could not be opened.  Logged, never raised to callers."""


@dataclasses.dataclass(frozen=True)
class LoginResult:
    already_authenticated: bool


def build_login_url(web_url: str, callback_url: str) -> str:
    return f"{web_url.rstrip('/')}/auth/verify?mcp_callback={quote(callback_url, safe='')}"


def launch_browser(url: str) -> threading.Thread:
    """Open *url* in the default browser on a daemon thread.

    Returns the thread so tests can join it; callers normally ignore it.
    """

    def _open() -> None:
        try:
            opened = webbrowser.open(url)
        except webbrowser.Error as exc:
            error = BrowserLaunchError(f"Could not open a browser: {exc}")
        else:
            if opened:
                return
            error = BrowserLaunchError("No runnable browser found")
        logger.warning("%s; open the login URL manually", error)

    thread = threading.Thread(target=_open, name="browser-launch", daemon=True)
    thread.start()
    return thread


def print_login_url(login_url: str) -> None:
    _stderr_console.print(
        f"\nOpening browser for login: {login_url}\n"
        "If the browser didn't open, visit the URL above manually.\n",
        soft_wrap=True,
        highlight=False,
    )


class BrowserLogin:
    """Runs interactive logins and stores the result in a ``SessionState``."""

    def __init__(
        self,
        session: SessionState,
        open_browser: Callable[[str], object] = launch_browser,
        announce: Callable[[str], None] = print_login_url,
        listener_factory: Callable[[], CallbackListener] = CallbackListener,
    ) -> None:
        self._session = session
        self._open_browser = open_browser
        self._announce = announce
        self._listener_factory = listener_factory

    async def login(self, web_url: str, timeout: float = DEFAULT_LOGIN_TIMEOUT) -> LoginResult:
        """Authenticate the human through the browser.

        Returns immediately when the session already holds a credential.

        Raises:
            ListenerStartError: The callback listener could not bind.
            LoginTimeoutError: No valid callback within *timeout* seconds.
        """
        if self._session.is_authenticated():
            logger.info("Login skipped: session already authenticated")
            return LoginResult(already_authenticated=True)

        listener = self._listener_factory()
        callback_url, outcome = await listener.start()
        try:
            login_url = build_login_url(web_url, callback_url)
            self._announce(login_url)
            self._launch(login_url)

            try:
                token = await asyncio.wait_for(outcome, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Browser login timed out after %.0fs", timeout)
                raise LoginTimeoutError("Browser login timed out. Please try again.") from None
        finally:
            await listener.aclose()

        self._session.set_token(token)
        logger.info("Browser login succeeded")
        return LoginResult(already_authenticated=False)

    def _launch(self, login_url: str) -> None:
        # Any failure here leaves the manual URL as the way forward.
        try:
            self._open_browser(login_url)
        except Exception as exc:
            logger.warning("Failed to launch browser: %s", BrowserLaunchError(str(exc)))
