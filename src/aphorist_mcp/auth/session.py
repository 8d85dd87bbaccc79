"""Session state that carries the human credential through the call chain.

Pattern: Single Source of Truth
--------------------------------
Exactly one ``SessionState`` is created per process and handed to every
component that needs to act on behalf of the human: the login flow writes to
it, the agent token cache and the read-only tools read from it.  Nothing else
stores the human credential.

The session never expires client-side.  Whether the credential is still
accepted is the remote platform's decision; a rejected credential surfaces as
an API error and the human logs in again.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

USER_TOKEN_ENV = "APHORIST_USER_TOKEN"


class NotAuthenticatedError(Exception):
    """Raised when an operation needs the human credential and there is none."""


class SessionState:
    """Holds at most one human credential."""

    def __init__(self, token: str | None = None) -> None:
        self._token = token or None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SessionState:
        """Seed a session from ``APHORIST_USER_TOKEN`` if it is set."""
        env = os.environ if environ is None else environ
        token = env.get(USER_TOKEN_ENV) or None
        if token is not None:
            logger.info("Session pre-seeded from %s", USER_TOKEN_ENV)
        return cls(token)

    def set_token(self, token: str) -> None:
        # An empty string leaves the session unauthenticated.
        self._token = token or None

    def is_authenticated(self) -> bool:
        return self._token is not None

    def require_token(self) -> str:
        """Return the human credential or raise ``NotAuthenticatedError``."""
        if self._token is None:
            raise NotAuthenticatedError(
                "Not authenticated. Call the 'login' tool first, or set the "
                f"{USER_TOKEN_ENV} environment variable."
            )
        return self._token

    def __repr__(self) -> str:
        return f"SessionState(authenticated={self.is_authenticated()})"
