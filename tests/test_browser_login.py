"""Tests for the browser login flow.

A fake "browser" follows the login URL by requesting the callback URL it
carries, which exercises the real listener end to end.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from aphorist_mcp.auth.browser_login import (
    BrowserLogin,
    LoginTimeoutError,
    build_login_url,
    launch_browser,
)
from aphorist_mcp.auth.callback_listener import CallbackListener, ListenerStartError
from aphorist_mcp.auth.session import SessionState

WEB_URL = "https://aphori.st"


def _callback_url(login_url: str) -> str:
    return parse_qs(urlsplit(login_url).query)["mcp_callback"][0]


class FakeBrowser:
    """Records opened URLs and, optionally, completes the redirect."""

    def __init__(self, queries: list[dict[str, str]] | None = None) -> None:
        self.queries = queries or []
        self.opened: list[str] = []
        self.responses: list[httpx.Response] = []
        self._tasks: list[asyncio.Task[None]] = []

    def __call__(self, login_url: str) -> None:
        self.opened.append(login_url)
        if self.queries:
            loop = asyncio.get_running_loop()
            self._tasks.append(loop.create_task(self._follow(_callback_url(login_url))))

    async def _follow(self, callback_url: str) -> None:
        async with httpx.AsyncClient() as http:
            for query in self.queries:
                self.responses.append(await http.get(callback_url, params=query))

    async def wait(self) -> None:
        await asyncio.gather(*self._tasks)


class RecordingListenerFactory:
    def __init__(self) -> None:
        self.created: list[CallbackListener] = []

    def __call__(self) -> CallbackListener:
        listener = CallbackListener()
        self.created.append(listener)
        return listener


class TestBuildLoginUrl:
    def test_callback_is_url_encoded(self) -> None:
        url = build_login_url(WEB_URL, "http://127.0.0.1:5555/callback")
        assert url == (
            "https://aphori.st/auth/verify"
            "?mcp_callback=http%3A%2F%2F127.0.0.1%3A5555%2Fcallback"
        )

    def test_trailing_slash_is_stripped(self) -> None:
        url = build_login_url("https://aphori.st/", "http://127.0.0.1:1/callback")
        assert url.startswith("https://aphori.st/auth/verify?")

    def test_round_trips_through_query_parsing(self) -> None:
        callback = "http://127.0.0.1:40000/callback"
        assert _callback_url(build_login_url(WEB_URL, callback)) == callback


class TestShortCircuit:
    def test_already_authenticated_does_nothing(self, seeded_session: SessionState) -> None:
        browser = MagicMock()
        announce = MagicMock()
        factory = MagicMock()
        login = BrowserLogin(seeded_session, open_browser=browser, announce=announce, listener_factory=factory)

        result = asyncio.run(login.login(WEB_URL))

        assert result.already_authenticated
        factory.assert_not_called()
        browser.assert_not_called()
        announce.assert_not_called()
        assert seeded_session.require_token() == "dev-token"


class TestSuccessfulLogin:
    def test_callback_token_lands_in_session(self, session: SessionState) -> None:
        browser = FakeBrowser([{"token": "human-token"}])
        factory = RecordingListenerFactory()
        announce = MagicMock()
        login = BrowserLogin(session, open_browser=browser, announce=announce, listener_factory=factory)

        async def _run() -> bool:
            result = await login.login(WEB_URL, timeout=5)
            await browser.wait()
            return result.already_authenticated

        already = asyncio.run(_run())

        assert not already
        assert session.require_token() == "human-token"
        assert browser.responses[0].status_code == 200
        announce.assert_called_once_with(browser.opened[0])
        assert browser.opened[0].startswith(f"{WEB_URL}/auth/verify?mcp_callback=")
        assert not factory.created[0].is_serving

    def test_invalid_callback_then_valid(self, session: SessionState) -> None:
        browser = FakeBrowser([{}, {"token": "retry-token"}])
        login = BrowserLogin(session, open_browser=browser, announce=MagicMock())

        async def _run() -> None:
            await login.login(WEB_URL, timeout=5)
            await browser.wait()

        asyncio.run(_run())

        assert [r.status_code for r in browser.responses] == [400, 200]
        assert session.require_token() == "retry-token"

    def test_second_login_short_circuits(self, session: SessionState) -> None:
        browser = FakeBrowser([{"token": "human-token"}])
        login = BrowserLogin(session, open_browser=browser, announce=MagicMock())

        async def _run() -> bool:
            await login.login(WEB_URL, timeout=5)
            await browser.wait()
            return (await login.login(WEB_URL, timeout=5)).already_authenticated

        assert asyncio.run(_run())
        assert len(browser.opened) == 1


class TestBrowserLaunchFailure:
    def test_launch_failure_is_logged_not_raised(
        self, session: SessionState, caplog: pytest.LogCaptureFixture
    ) -> None:
        follower = FakeBrowser([{"token": "manual-token"}])

        def broken_browser(url: str) -> None:
            raise RuntimeError("no display")

        # The human copies the announced URL by hand.
        login = BrowserLogin(session, open_browser=broken_browser, announce=follower)

        async def _run() -> None:
            await login.login(WEB_URL, timeout=5)
            await follower.wait()

        with caplog.at_level(logging.WARNING, logger="aphorist_mcp.auth.browser_login"):
            asyncio.run(_run())

        assert session.require_token() == "manual-token"
        assert "no display" in caplog.text

    def test_launch_browser_logs_when_no_browser(self, caplog: pytest.LogCaptureFixture) -> None:
        with patch("aphorist_mcp.auth.browser_login.webbrowser.open", return_value=False) as mock_open:
            with caplog.at_level(logging.WARNING, logger="aphorist_mcp.auth.browser_login"):
                launch_browser("https://aphori.st/auth/verify").join(timeout=5)

        mock_open.assert_called_once_with("https://aphori.st/auth/verify")
        assert "No runnable browser" in caplog.text

    def test_launch_browser_logs_webbrowser_error(self, caplog: pytest.LogCaptureFixture) -> None:
        with patch(
            "aphorist_mcp.auth.browser_login.webbrowser.open",
            side_effect=webbrowser.Error("could not locate runnable browser"),
        ):
            with caplog.at_level(logging.WARNING, logger="aphorist_mcp.auth.browser_login"):
                launch_browser("https://aphori.st/auth/verify").join(timeout=5)

        assert "could not locate runnable browser" in caplog.text

    def test_launch_browser_success_is_quiet(self, caplog: pytest.LogCaptureFixture) -> None:
        with patch("aphorist_mcp.auth.browser_login.webbrowser.open", return_value=True):
            with caplog.at_level(logging.WARNING, logger="aphorist_mcp.auth.browser_login"):
                launch_browser("https://aphori.st/auth/verify").join(timeout=5)

        assert caplog.records == []


class TestTimeout:
    def test_timeout_raises_and_frees_port(self, session: SessionState) -> None:
        browser = FakeBrowser()
        factory = RecordingListenerFactory()
        login = BrowserLogin(session, open_browser=browser, announce=MagicMock(), listener_factory=factory)

        async def _run() -> None:
            with pytest.raises(LoginTimeoutError, match="timed out"):
                await login.login(WEB_URL, timeout=0.2)

            port = urlsplit(_callback_url(browser.opened[0])).port
            server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", port)
            server.close()
            await server.wait_closed()

        asyncio.run(_run())

        assert not session.is_authenticated()
        assert not factory.created[0].is_serving

    def test_redirect_after_timeout_fails_at_transport(self, session: SessionState) -> None:
        browser = FakeBrowser()
        login = BrowserLogin(session, open_browser=browser, announce=MagicMock())

        async def _run() -> None:
            with pytest.raises(LoginTimeoutError):
                await login.login(WEB_URL, timeout=0.1)
            async with httpx.AsyncClient() as http:
                with pytest.raises(httpx.ConnectError):
                    await http.get(_callback_url(browser.opened[0]), params={"token": "late"})

        asyncio.run(_run())
        assert not session.is_authenticated()


class TestListenerStartFailure:
    def test_start_failure_aborts_before_browser(self, session: SessionState) -> None:
        listener = MagicMock()
        listener.start.side_effect = ListenerStartError("Failed to start callback server")
        browser = MagicMock()
        login = BrowserLogin(session, open_browser=browser, announce=MagicMock(), listener_factory=lambda: listener)

        with pytest.raises(ListenerStartError):
            asyncio.run(login.login(WEB_URL))

        browser.assert_not_called()
        assert not session.is_authenticated()
