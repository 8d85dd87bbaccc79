"""Interactive terminal login.

Runs the same browser login the MCP ``login`` tool uses, then prints the
human credential so it can be exported as ``APHORIST_USER_TOKEN`` for later
server runs.  Output goes to stderr except the export line, which goes to
stdout so it can be captured with ``eval``.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import sys

from rich.console import Console
from rich.panel import Panel

from aphorist_mcp.api.client import AphoristAPIError, AphoristClient
from aphorist_mcp.auth.browser_login import BrowserLogin, LoginTimeoutError
from aphorist_mcp.auth.callback_listener import ListenerStartError
from aphorist_mcp.auth.session import USER_TOKEN_ENV, SessionState
from aphorist_mcp.config import Settings

logger = logging.getLogger(__name__)
console = Console(stderr=True)


def _print_banner(settings: Settings) -> None:
    console.print(
        Panel(
            "[bold]Aphorist login[/bold]\n"
            f"Web: {settings.web_url}\nAPI: {settings.api_url}",
            border_style="blue",
        )
    )


async def _login(settings: Settings, verify: bool) -> str:
    session = SessionState()
    await BrowserLogin(session).login(settings.web_url, timeout=settings.login_timeout)
    token = session.require_token()

    if verify:
        async with AphoristClient(settings.api_url, timeout=settings.http_timeout) as client:
            user = await client.verify_token(token)
        console.print(f"  [green]Authenticated[/green] as [bold]{user.get('email', user.get('id'))}[/bold]")
    return token


def run_login_cli(settings: Settings, verify: bool = True) -> int:
    """Log in through the browser and print an export line.  Returns an exit code."""
    _print_banner(settings)
    try:
        token = asyncio.run(_login(settings, verify))
    except (ListenerStartError, LoginTimeoutError, AphoristAPIError) as exc:
        console.print(f"[red]Login failed:[/red] {exc}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[dim]Login cancelled.[/dim]")
        return 130

    sys.stdout.write(f"export {USER_TOKEN_ENV}={shlex.quote(token)}\n")
    sys.stdout.flush()
    return 0
