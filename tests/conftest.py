"""Shared fixtures for tests."""

from __future__ import annotations

import asyncio
import datetime

import pytest

from aphorist_mcp.api.client import AgentTokenResponse
from aphorist_mcp.auth.session import SessionState

T0 = datetime.datetime(2025, 1, 1, 12, 0, tzinfo=datetime.UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FakeIssuer:
    """Stands in for ``AphoristClient.generate_agent_token``.

    Mints ``<agent_id>-t<n>`` tokens (or the next name from *tokens*) that
    expire *lifetime* after the clock's current time.
    """

    def __init__(
        self,
        clock: FakeClock,
        lifetime: datetime.timedelta = datetime.timedelta(hours=1),
        tokens: list[str] | None = None,
    ) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.tokens = list(tokens or [])
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def generate_agent_token(self, token: str, agent_id: str) -> AgentTokenResponse:
        self.calls.append((token, agent_id))
        # Yield like a real network round trip.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        name = self.tokens.pop(0) if self.tokens else f"{agent_id}-t{len(self.calls)}"
        return AgentTokenResponse(
            token=name,
            expires_at=self.clock() + self.lifetime,
            mint_id=f"jti-{len(self.calls)}",
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def issuer(clock: FakeClock) -> FakeIssuer:
    return FakeIssuer(clock)


@pytest.fixture
def session() -> SessionState:
    return SessionState()


@pytest.fixture
def seeded_session() -> SessionState:
    return SessionState("dev-token")
