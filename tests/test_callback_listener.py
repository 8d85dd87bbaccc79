"""Tests for the loopback callback listener.

These run against real sockets on 127.0.0.1.  Each test drives its own event
loop with ``asyncio.run``.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch
from urllib.parse import urlsplit

import httpx
import pytest

from aphorist_mcp.auth.callback_listener import (
    FAILURE_PAGE,
    SUCCESS_PAGE,
    CallbackListener,
    ListenerStartError,
)


def _port(url: str) -> int:
    port = urlsplit(url).port
    assert port is not None
    return port


async def _raw_request(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, target: str) -> bytes:
    writer.write(f"GET {target} HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n".encode())
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return data


class TestStart:
    def test_binds_loopback_ephemeral_port(self) -> None:
        async def _run() -> str:
            async with CallbackListener() as listener:
                url, _ = await listener.start()
                assert listener.is_serving
                return url

        url = asyncio.run(_run())
        parts = urlsplit(url)
        assert parts.scheme == "http"
        assert parts.hostname == "127.0.0.1"
        assert parts.path == "/callback"
        assert parts.port and parts.port > 0

    def test_bind_failure_raises_listener_start_error(self) -> None:
        async def _run() -> None:
            listener = CallbackListener()
            with patch(
                "aphorist_mcp.auth.callback_listener.asyncio.start_server",
                new=AsyncMock(side_effect=OSError(98, "Address already in use")),
            ):
                await listener.start()

        with pytest.raises(ListenerStartError, match="Address already in use"):
            asyncio.run(_run())

    def test_cannot_start_twice(self) -> None:
        async def _run() -> None:
            async with CallbackListener() as listener:
                await listener.start()
                await listener.start()

        with pytest.raises(RuntimeError):
            asyncio.run(_run())


class TestCallbackHandling:
    def test_valid_callback_settles_outcome(self) -> None:
        async def _run() -> tuple[httpx.Response, str, bool]:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                async with httpx.AsyncClient() as http:
                    response = await http.get(url, params={"token": "tok-123"})
                token = await asyncio.wait_for(outcome, timeout=5)
                return response, token, listener.is_serving

        response, token, serving = asyncio.run(_run())
        assert response.status_code == 200
        assert response.text == SUCCESS_PAGE
        assert token == "tok-123"
        assert not serving

    def test_listener_refuses_connections_after_success(self) -> None:
        async def _run() -> None:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                async with httpx.AsyncClient() as http:
                    await http.get(url, params={"token": "first"})
                    with pytest.raises(httpx.ConnectError):
                        await http.get(url, params={"token": "second"})
                assert outcome.result() == "first"

        asyncio.run(_run())

    def test_request_after_settlement_gets_not_found(self) -> None:
        async def _run() -> tuple[bytes, str]:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                # Accepted before the valid callback arrives, used after.
                reader, writer = await asyncio.open_connection("127.0.0.1", _port(url))
                await asyncio.sleep(0.05)

                async with httpx.AsyncClient() as http:
                    await http.get(url, params={"token": "first"})

                late = await _raw_request(reader, writer, "/callback?token=second")
                return late, outcome.result()

        late, token = asyncio.run(_run())
        assert late.startswith(b"HTTP/1.1 404")
        assert token == "first"

    @pytest.mark.parametrize("query", [None, {"token": ""}, {"other": "x"}])
    def test_missing_token_keeps_waiting(self, query: dict[str, str] | None) -> None:
        async def _run() -> tuple[httpx.Response, bool, bool]:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                async with httpx.AsyncClient() as http:
                    response = await http.get(url, params=query)
                return response, outcome.done(), listener.is_serving

        response, done, serving = asyncio.run(_run())
        assert response.status_code == 400
        assert response.text == FAILURE_PAGE
        assert not done
        assert serving

    def test_retry_after_invalid_callback_succeeds(self) -> None:
        async def _run() -> str:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                async with httpx.AsyncClient() as http:
                    await http.get(url)
                    await http.get(url, params={"token": "second-try"})
                return await asyncio.wait_for(outcome, timeout=5)

        assert asyncio.run(_run()) == "second-try"

    def test_other_paths_are_not_found(self) -> None:
        async def _run() -> tuple[httpx.Response, bool]:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                base = url.removesuffix("/callback")
                async with httpx.AsyncClient() as http:
                    response = await http.get(f"{base}/favicon.ico", params={"token": "x"})
                return response, outcome.done()

        response, done = asyncio.run(_run())
        assert response.status_code == 404
        assert not done

    def test_post_to_callback_does_not_settle(self) -> None:
        async def _run() -> tuple[httpx.Response, bool]:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                async with httpx.AsyncClient() as http:
                    response = await http.post(url, params={"token": "human-token"})
                return response, outcome.done()

        response, done = asyncio.run(_run())
        assert response.status_code == 405
        assert not done

    def test_garbage_request_line_is_rejected(self) -> None:
        async def _run() -> tuple[bytes, bool]:
            async with CallbackListener() as listener:
                url, outcome = await listener.start()
                reader, writer = await asyncio.open_connection("127.0.0.1", _port(url))
                writer.write(b"NONSENSE\r\n\r\n")
                await writer.drain()
                data = await asyncio.wait_for(reader.read(), timeout=5)
                writer.close()
                return data, outcome.done()

        data, done = asyncio.run(_run())
        assert data.startswith(b"HTTP/1.1 400")
        assert not done


class TestTeardown:
    def test_aclose_cancels_pending_outcome(self) -> None:
        async def _run() -> asyncio.Future[str]:
            listener = CallbackListener()
            _, outcome = await listener.start()
            await listener.aclose()
            return outcome

        outcome = asyncio.run(_run())
        assert outcome.cancelled()

    def test_aclose_is_idempotent(self) -> None:
        async def _run() -> None:
            listener = CallbackListener()
            await listener.start()
            await listener.aclose()
            await listener.aclose()
            assert not listener.is_serving

        asyncio.run(_run())

    def test_aclose_without_start(self) -> None:
        asyncio.run(CallbackListener().aclose())

    def test_aclose_drops_idle_connections(self) -> None:
        async def _run() -> bytes:
            listener = CallbackListener()
            url, _ = await listener.start()
            reader, writer = await asyncio.open_connection("127.0.0.1", _port(url))
            await asyncio.sleep(0.05)

            await asyncio.wait_for(listener.aclose(), timeout=5)
            data = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
            return data

        assert asyncio.run(_run()) == b""

    def test_port_is_free_after_close(self) -> None:
        async def _run() -> None:
            listener = CallbackListener()
            url, _ = await listener.start()
            await listener.aclose()

            server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", _port(url))
            server.close()
            await server.wait_closed()

        asyncio.run(_run())
