"""Single-use loopback HTTP endpoint that captures a login redirect.

Pattern: Ephemeral Listener
----------------------------
The external login page finishes by redirecting the human's browser to
``http://127.0.0.1:<port>/callback?token=...``.  The listener binds an
OS-assigned port for the duration of one login attempt and settles an
``asyncio.Future`` with the token the first time a valid callback arrives.

  - A valid callback answers 200, settles the outcome and closes the
    listening socket straight away.
  - A callback without a token answers 400 and keeps listening, so the human
    can retry from the same tab.
  - Any other path answers 404, and any method but GET answers 405.

The listening socket must not outlive the attempt that owns it: a stray
listener would swallow the redirect of a later login.  ``aclose()`` releases
the socket and every open connection, and is safe to call more than once.
"""

from __future__ import annotations

import asyncio
import http
import logging
from urllib.parse import parse_qs, urlsplit

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
LOOPBACK_HOST = "127.0.0.1"

_PAGE = """<!DOCTYPE html>
<html>
  <body style="font-family: system-ui, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; background: #f8fafc;">
    <div style="text-align: center;">
      <h1 style="color: {color};">{title}</h1>
      <p style="color: #64748b;">{message}</p>
    </div>
  </body>
</html>
"""

SUCCESS_PAGE = _PAGE.format(
    color="#16a34a",
    title="Authenticated!",
    message="You can close this window and return to your MCP client.",
)
FAILURE_PAGE = _PAGE.format(
    color="#dc2626",
    title="Authentication failed",
    message="No token received. Please try again.",
)


class ListenerStartError(Exception):
    """Raised when the callback listener cannot bind its socket."""


class CallbackListener:
    """Loopback HTTP listener that settles once with a captured token."""

    def __init__(self, host: str = LOOPBACK_HOST, path: str = CALLBACK_PATH) -> None:
        self._host = host
        self._path = path
        self._server: asyncio.Server | None = None
        self._outcome: asyncio.Future[str] | None = None
        self._connections: set[asyncio.StreamWriter] = set()
        self._closed = False

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> tuple[str, asyncio.Future[str]]:
        """Bind an ephemeral port and return ``(callback_url, outcome)``.

        Raises ``ListenerStartError`` if the socket cannot be bound.
        """
        if self._server is not None:
            raise RuntimeError("CallbackListener can only be started once")

        self._outcome = asyncio.get_running_loop().create_future()
        try:
            self._server = await asyncio.start_server(self._handle_connection, self._host, 0)
        except OSError as exc:
            raise ListenerStartError(f"Failed to start callback server: {exc}") from exc

        port = self._server.sockets[0].getsockname()[1]
        callback_url = f"http://{self._host}:{port}{self._path}"
        logger.debug("Callback listener bound to %s", callback_url)
        return callback_url, self._outcome

    async def aclose(self) -> None:
        """Release the listening socket and any open connections."""
        if self._closed:
            return
        self._closed = True
        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._connections):
            writer.close()
        await self._server.wait_closed()
        logger.debug("Callback listener closed")

    async def __aenter__(self) -> CallbackListener:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- request handling ----------------------------------------------------

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._connections.add(writer)
        try:
            request_line = await reader.readline()
            if not request_line:
                return
            # Drain the headers; nothing in them matters to the callback.
            while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                pass

            status, body = self._route(request_line)
            await self._respond(writer, status, body)
        except (ConnectionError, ValueError) as exc:
            logger.debug("Callback connection dropped: %s", exc)
        finally:
            self._connections.discard(writer)
            writer.close()

    def _route(self, request_line: bytes) -> tuple[http.HTTPStatus, str]:
        parts = request_line.decode("latin-1").split()
        if len(parts) != 3:
            return http.HTTPStatus.BAD_REQUEST, ""

        method, raw_target, _ = parts
        target = urlsplit(raw_target)
        if target.path != self._path or self._settled():
            return http.HTTPStatus.NOT_FOUND, ""
        if method != "GET":
            return http.HTTPStatus.METHOD_NOT_ALLOWED, ""

        token = parse_qs(target.query).get("token", [""])[0]
        if not token:
            logger.warning("Login callback received without a token; still waiting")
            return http.HTTPStatus.BAD_REQUEST, FAILURE_PAGE

        assert self._outcome is not None
        self._outcome.set_result(token)
        # Stop accepting right away; aclose() finishes the teardown.
        if self._server is not None:
            self._server.close()
        logger.info("Login callback received")
        return http.HTTPStatus.OK, SUCCESS_PAGE

    def _settled(self) -> bool:
        return self._outcome is None or self._outcome.done()

    @staticmethod
    async def _respond(
        writer: asyncio.StreamWriter, status: http.HTTPStatus, body: str
    ) -> None:
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            "Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        writer.write(head.encode("latin-1") + payload)
        await writer.drain()
