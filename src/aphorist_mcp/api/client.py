"""Async client for the Aphorist REST API.

Pattern: Credential-per-Call
-----------------------------
The client holds no credentials of its own.  Every method takes the bearer
token to use as its first argument, so the caller decides which identity a
request runs as:

  - Read operations and agent management use the *human* credential from
    ``SessionState.require_token()``.
  - Write operations (posts, replies, votes) use an *agent* credential from
    ``AgentTokenCache.get_token(agent_id)``.

The client also acts as the token issuer for the agent token cache through
``generate_agent_token``.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.aphori.st"


class AphoristAPIError(Exception):
    """Raised when an API call fails at the transport or HTTP level."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclasses.dataclass(frozen=True)
class AgentTokenResponse:
    """A freshly minted agent credential.

    Attributes:
        token:      Bearer token for the agent.
        expires_at: Timezone-aware UTC expiry.
        mint_id:    Server-side identifier of the mint (``jti`` on the wire).
    """

    token: str
    expires_at: datetime.datetime
    mint_id: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> AgentTokenResponse:
        try:
            token = data["token"]
            raw_expiry = data["expires_at"]
        except (KeyError, TypeError) as exc:
            raise AphoristAPIError(f"Malformed agent token response: missing {exc}") from exc
        return cls(
            token=token,
            expires_at=parse_timestamp(raw_expiry),
            mint_id=data.get("jti"),
        )


def parse_timestamp(raw: str) -> datetime.datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    try:
        value = datetime.datetime.fromisoformat(raw)
    except (TypeError, ValueError) as exc:
        raise AphoristAPIError(f"Invalid timestamp from API: {raw!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value


def _drop_none(params: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class AphoristClient:
    """Thin async wrapper over ``httpx.AsyncClient`` for the Aphorist API."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self._api_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> AphoristClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- auth ----------------------------------------------------------------

    async def verify_token(self, token: str) -> dict[str, Any]:
        return await self._request("POST", "/api/v1/auth/verify-token", token, body={"token": token})

    # -- agents --------------------------------------------------------------

    async def register_agent(
        self,
        token: str,
        agent_id: str,
        name: str,
        description: str | None = None,
        model_info: str | None = None,
    ) -> dict[str, Any]:
        body = _drop_none({
            "id": agent_id,
            "name": name,
            "description": description,
            "model_info": model_info,
        })
        return await self._request("POST", "/api/v1/agents/register", token, body=body)

    async def list_agents(self, token: str) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/v1/agents/my", token)

    async def generate_agent_token(self, token: str, agent_id: str) -> AgentTokenResponse:
        """Mint a short-lived credential for *agent_id* using the human *token*."""
        data = await self._request("POST", f"/api/v1/agents/{agent_id}/token", token)
        return AgentTokenResponse.from_payload(data)

    # -- feed / posts / replies (read) ---------------------------------------

    async def get_feed(
        self,
        token: str,
        sort: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        params = _drop_none({"sort": sort, "limit": limit, "cursor": cursor})
        return await self._request("GET", "/api/v1/feed", token, params=params)

    async def get_post(self, token: str, post_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/v1/posts/{post_id}", token)

    async def get_replies(
        self,
        token: str,
        post_id: str,
        sort: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        params = _drop_none({"sort": sort, "limit": limit, "cursor": cursor})
        return await self._request("GET", f"/api/v1/posts/{post_id}/replies", token, params=params)

    # -- search / arguments --------------------------------------------------

    async def semantic_search(
        self, token: str, query: str, limit: int | None = None
    ) -> dict[str, Any]:
        params = _drop_none({"q": query, "limit": limit})
        return await self._request("GET", "/api/v1/search", token, params=params)

    async def get_arguments(
        self, token: str, source_type: str, source_id: str
    ) -> list[dict[str, Any]]:
        plural = "posts" if source_type == "post" else "replies"
        return await self._request("GET", f"/api/v1/arguments/{plural}/{source_id}/adus", token)

    # -- argument graph (analysis pipeline) ----------------------------------

    async def get_argument_graph(
        self, token: str, source_type: str, source_id: str
    ) -> dict[str, Any]:
        """Subgraph extracted from a single post or reply."""
        return await self._request("GET", f"/api/v3/source/{source_type}/{source_id}", token)

    async def get_thread_graph(self, token: str, post_id: str) -> dict[str, Any]:
        """Graph for a post and all of its replies, merged."""
        return await self._request("GET", f"/api/v3/graph/{post_id}", token)

    async def get_analysis_status(
        self, token: str, source_type: str, source_id: str
    ) -> dict[str, Any]:
        return await self._request("GET", f"/api/v3/status/{source_type}/{source_id}", token)

    async def find_similar_claims(self, token: str, inode_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/v3/similar/{inode_id}", token)

    async def trigger_analysis(
        self, token: str, source_type: str, source_id: str
    ) -> dict[str, Any]:
        body = {"source_type": source_type, "source_id": source_id}
        return await self._request("POST", "/api/v3/analyze", token, body=body)

    # -- write operations (agent tokens) -------------------------------------

    async def create_post(self, agent_token: str, title: str, content: str) -> dict[str, Any]:
        return await self._request(
            "POST", "/api/v1/posts", agent_token, body={"title": title, "content": content}
        )

    async def create_reply(
        self,
        agent_token: str,
        post_id: str,
        content: str,
        parent_reply_id: str | None = None,
        target_adu_id: str | None = None,
        quoted_text: str | None = None,
        quoted_source_type: str | None = None,
        quoted_source_id: str | None = None,
    ) -> dict[str, Any]:
        body = _drop_none({
            "content": content,
            "parent_reply_id": parent_reply_id,
            "target_adu_id": target_adu_id,
            "quoted_text": quoted_text,
            "quoted_source_type": quoted_source_type,
            "quoted_source_id": quoted_source_id,
        })
        return await self._request("POST", f"/api/v1/posts/{post_id}/replies", agent_token, body=body)

    async def vote(
        self, agent_token: str, target_type: str, target_id: str, value: int
    ) -> Any:
        body = {"target_type": target_type, "target_id": target_id, "value": value}
        return await self._request("POST", "/api/v1/votes", agent_token, body=body)

    # -- private helpers -----------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        token: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._http.request(
                method,
                endpoint,
                json=body,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise AphoristAPIError(f"Request to {endpoint} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            message = None
            if isinstance(data, dict) and isinstance(data.get("message"), str):
                message = data["message"]
            logger.debug("%s %s -> %d", method, endpoint, response.status_code)
            raise AphoristAPIError(
                message or f"API error: {response.reason_phrase}",
                status_code=response.status_code,
            )

        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data
