"""Per-agent credential cache backed by the human session.

Pattern: Lazy Credential Brokering
-----------------------------------
Agents never hold long-lived credentials.  When a write operation needs to
act as an agent, it asks the cache for a token right before the API call.
The cache hands back the stored credential if it will outlive the refresh
margin, and otherwise mints a new one through the token issuer using the
human's credential.

Refreshing only on demand, with the margin check made immediately before the
token is used, means no caller is handed a token about to expire mid-call and
no background refresher is needed.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
from typing import Callable

from aphorist_mcp.api.client import AphoristAPIError, AphoristClient
from aphorist_mcp.auth.session import SessionState

logger = logging.getLogger(__name__)

REFRESH_MARGIN = datetime.timedelta(minutes=5)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclasses.dataclass(frozen=True)
class AgentCredential:
    """A minted agent token.  Replaced wholesale on refresh, never mutated."""

    agent_id: str
    token: str
    expires_at: datetime.datetime

    def remaining(self, now: datetime.datetime) -> datetime.timedelta:
        return self.expires_at - now


class TokenIssuanceError(Exception):
    """Raised when the remote platform cannot mint an agent token."""


class AgentTokenCache:
    """Hands out a valid token per ``agent_id``, minting only when necessary."""

    def __init__(
        self,
        session: SessionState,
        issuer: AphoristClient,
        refresh_margin: datetime.timedelta = REFRESH_MARGIN,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._issuer = issuer
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._entries: dict[str, AgentCredential] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Bumped by clear_all() so mints already in flight do not repopulate.
        self._generation = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, agent_id: str) -> AgentCredential | None:
        """Return the cached credential for *agent_id* without refreshing it."""
        return self._entries.get(agent_id)

    async def get_token(self, agent_id: str) -> str:
        """Return a token for *agent_id* that outlives the refresh margin.

        Raises ``NotAuthenticatedError`` if there is no human credential and
        ``TokenIssuanceError`` if a needed mint fails.  A failed mint leaves
        any existing entry in place.
        """
        self._session.require_token()

        cached = self._fresh_entry(agent_id)
        if cached is not None:
            return cached.token

        # Concurrent callers for one agent wait here; the first one mints and
        # the rest find a fresh entry.
        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        async with lock:
            cached = self._fresh_entry(agent_id)
            if cached is not None:
                return cached.token
            user_token = self._session.require_token()
            generation = self._generation
            credential = await self._mint(user_token, agent_id)
            if generation == self._generation:
                self._entries[agent_id] = credential
            else:
                logger.info(
                    "Cache cleared while minting for agent=%s; token used once, not stored",
                    agent_id,
                )
            return credential.token

    def clear_all(self) -> None:
        """Drop every cached credential, forcing a remint on next use."""
        if self._entries:
            logger.info("Clearing %d cached agent token(s)", len(self._entries))
        self._entries.clear()
        self._generation += 1
        self._locks = {
            agent_id: lock for agent_id, lock in self._locks.items() if lock.locked()
        }

    # -- private helpers -----------------------------------------------------

    def _fresh_entry(self, agent_id: str) -> AgentCredential | None:
        entry = self._entries.get(agent_id)
        if entry is not None and entry.remaining(self._clock()) > self._refresh_margin:
            return entry
        return None

    async def _mint(self, user_token: str, agent_id: str) -> AgentCredential:
        try:
            response = await self._issuer.generate_agent_token(user_token, agent_id)
        except AphoristAPIError as exc:
            raise TokenIssuanceError(
                f"Failed to generate token for agent '{agent_id}': {exc}"
            ) from exc

        credential = AgentCredential(
            agent_id=agent_id,
            token=response.token,
            expires_at=response.expires_at,
        )
        remaining = credential.remaining(self._clock())
        if remaining <= self._refresh_margin:
            logger.warning(
                "Minted token for agent=%s expires in %.0fs, inside the %.0fs refresh margin",
                agent_id,
                remaining.total_seconds(),
                self._refresh_margin.total_seconds(),
            )
        else:
            logger.info(
                "Minted token for agent=%s, mint_id=%s, expires_at=%s",
                agent_id,
                response.mint_id,
                credential.expires_at.isoformat(),
            )
        return credential
