"""MCP server exposing the Aphorist platform to AI agents.

Pattern: Identity-Routed Tool Registry
---------------------------------------
Every tool declares which identity it runs as, and that decides where its
credential comes from:

  - ``login`` needs no credential; it establishes the human session.
  - Read tools and agent management run as the *human*, through
    ``SessionState.require_token()``.
  - Write tools take an ``agent_id`` and run as that *agent*, through
    ``AgentTokenCache.get_token(agent_id)``, which mints on demand.

The server owns exactly one ``SessionState`` and one ``AgentTokenCache``;
both are constructed here and injected into their collaborators, so tests can
build isolated instances.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from mcp.server import Server
from mcp.types import TextContent, Tool

from aphorist_mcp.api.client import AphoristClient
from aphorist_mcp.auth.agent_tokens import AgentTokenCache
from aphorist_mcp.auth.browser_login import BrowserLogin
from aphorist_mcp.auth.session import SessionState
from aphorist_mcp.config import Settings
from aphorist_mcp.mcp import formatting

logger = logging.getLogger(__name__)

SERVER_NAME = "aphorist-mcp"

ToolHandler = Callable[[dict[str, Any]], Awaitable[list[TextContent]]]

_SOURCE_TYPE = {"type": "string", "enum": ["post", "reply"]}
_LIMIT = {"type": "integer", "minimum": 1, "maximum": 100}
_AGENT_ID = {"type": "string", "description": "ID of the agent to act as."}


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _require(args: dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or value == "":
        raise ValueError(f"Missing required argument: {key}")
    return value


class AphoristMCPServer:
    """Registers the Aphorist tools and serves them over stdio."""

    def __init__(
        self,
        settings: Settings,
        client: AphoristClient | None = None,
        session: SessionState | None = None,
        browser_login: BrowserLogin | None = None,
    ) -> None:
        self._settings = settings
        self._server = Server(SERVER_NAME)
        self._client = client or AphoristClient(settings.api_url, timeout=settings.http_timeout)
        self._session = session or SessionState.from_env()
        self._agent_tokens = AgentTokenCache(self._session, self._client)
        self._browser_login = browser_login or BrowserLogin(self._session)
        # Login attempts must not overlap; the guard lives here, at the call site.
        self._login_lock = asyncio.Lock()

        self._tools: dict[str, Tool] = {}
        self._tool_handlers: dict[str, ToolHandler] = {}
        self._register_all_tools()

        logger.info(
            "MCP server '%s' ready: api=%s, web=%s, authenticated=%s",
            SERVER_NAME,
            settings.api_url,
            settings.web_url,
            self._session.is_authenticated(),
        )

    @property
    def session(self) -> SessionState:
        return self._session

    @property
    def agent_tokens(self) -> AgentTokenCache:
        return self._agent_tokens

    # -- tool registration ---------------------------------------------------

    def _register_tool(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        handler: ToolHandler,
    ) -> None:
        self._tools[name] = Tool(name=name, description=description, inputSchema=input_schema)
        self._tool_handlers[name] = handler

    def _register_all_tools(self) -> None:
        self._register_tool(
            name="login",
            description=(
                "Authenticate with Aphorist via browser-based login. Opens a browser "
                "window for magic link authentication. In development, set "
                "APHORIST_USER_TOKEN to skip browser login."
            ),
            input_schema={"type": "object", "properties": {}},
            handler=self._login,
        )
        self._register_tool(
            name="register_agent",
            description="Register a new AI agent identity on Aphorist. Requires human authentication first.",
            input_schema={
                "type": "object",
                "properties": {
                    "id": {
                        "type": "string",
                        "minLength": 1,
                        "maxLength": 50,
                        "pattern": "^[a-zA-Z0-9_-]+$",
                        "description": "Unique agent ID (letters, numbers, underscores, hyphens).",
                    },
                    "name": {"type": "string", "minLength": 1, "maxLength": 100, "description": "Display name."},
                    "description": {"type": "string", "maxLength": 1000, "description": "Agent description."},
                    "model_info": {"type": "string", "maxLength": 255, "description": "Model information."},
                },
                "required": ["id", "name"],
            },
            handler=self._register_agent,
        )
        self._register_tool(
            name="list_agents",
            description="List the authenticated user's registered AI agents.",
            input_schema={"type": "object", "properties": {}},
            handler=self._list_agents,
        )
        self._register_tool(
            name="get_feed",
            description="Browse the Aphorist post feed. Returns a paginated list of posts.",
            input_schema={
                "type": "object",
                "properties": {
                    "sort": {
                        "type": "string",
                        "enum": ["hot", "new", "top", "rising", "controversial", "following"],
                        "description": "Sort order (default: hot).",
                    },
                    "limit": {**_LIMIT, "description": "Number of posts to return (default: 25)."},
                    "cursor": {"type": "string", "description": "Pagination cursor from a previous response."},
                },
            },
            handler=self._get_feed,
        )
        self._register_tool(
            name="get_post",
            description="Get a single Aphorist post by its ID, including author information.",
            input_schema={
                "type": "object",
                "properties": {"post_id": {"type": "string", "description": "UUID of the post."}},
                "required": ["post_id"],
            },
            handler=self._get_post,
        )
        self._register_tool(
            name="get_replies",
            description="Get replies for an Aphorist post (threaded, paginated).",
            input_schema={
                "type": "object",
                "properties": {
                    "post_id": {"type": "string", "description": "UUID of the post."},
                    "sort": {
                        "type": "string",
                        "enum": ["top", "new", "controversial"],
                        "description": "Sort order for replies (default: top).",
                    },
                    "limit": {**_LIMIT, "description": "Number of replies to return (default: 25)."},
                    "cursor": {"type": "string", "description": "Pagination cursor."},
                },
                "required": ["post_id"],
            },
            handler=self._get_replies,
        )
        self._register_tool(
            name="semantic_search",
            description="Search Aphorist posts and replies by meaning using semantic search.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "minLength": 1, "description": "Natural language query."},
                    "limit": {**_LIMIT, "description": "Max results (default: 20)."},
                },
                "required": ["query"],
            },
            handler=self._semantic_search,
        )
        self._register_tool(
            name="get_arguments",
            description="Get the argument units (claims, premises) extracted from a post or reply.",
            input_schema={
                "type": "object",
                "properties": {
                    "source_type": {**_SOURCE_TYPE, "description": "Post or reply."},
                    "source_id": {"type": "string", "description": "UUID of the post or reply."},
                },
                "required": ["source_type", "source_id"],
            },
            handler=self._get_arguments,
        )
        source_schema = {
            "type": "object",
            "properties": {
                "source_type": {**_SOURCE_TYPE, "description": "Post or reply."},
                "source_id": {"type": "string", "description": "UUID of the post or reply."},
            },
            "required": ["source_type", "source_id"],
        }
        self._register_tool(
            name="get_argument_graph",
            description=(
                "Get the argument graph for a single post or reply: claims, argument "
                "schemes, edges, missing premises and Socratic questions."
            ),
            input_schema=source_schema,
            handler=self._get_argument_graph,
        )
        self._register_tool(
            name="get_thread_graph",
            description="Get the argument graph for a post and all its replies, merged into a single graph.",
            input_schema={
                "type": "object",
                "properties": {"post_id": {"type": "string", "description": "UUID of the post."}},
                "required": ["post_id"],
            },
            handler=self._get_thread_graph,
        )
        self._register_tool(
            name="get_analysis_status",
            description="Check the argument analysis progress for a post or reply.",
            input_schema=source_schema,
            handler=self._get_analysis_status,
        )
        self._register_tool(
            name="find_similar_claims",
            description="Find semantically similar claims across the platform, with their source context.",
            input_schema={
                "type": "object",
                "properties": {"inode_id": {"type": "string", "description": "UUID of the claim (I-node)."}},
                "required": ["inode_id"],
            },
            handler=self._find_similar_claims,
        )
        self._register_tool(
            name="trigger_analysis",
            description="Manually trigger argument analysis for a post or reply.",
            input_schema=source_schema,
            handler=self._trigger_analysis,
        )
        self._register_tool(
            name="create_post",
            description="Create a new post on Aphorist as a specific agent.",
            input_schema={
                "type": "object",
                "properties": {
                    "agent_id": _AGENT_ID,
                    "title": {"type": "string", "minLength": 1, "maxLength": 300, "description": "Post title."},
                    "content": {"type": "string", "minLength": 1, "maxLength": 2000, "description": "Post body."},
                },
                "required": ["agent_id", "title", "content"],
            },
            handler=self._create_post,
        )
        self._register_tool(
            name="create_reply",
            description="Reply to a post on Aphorist as a specific agent. Supports threading and quoting.",
            input_schema={
                "type": "object",
                "properties": {
                    "agent_id": _AGENT_ID,
                    "post_id": {"type": "string", "description": "UUID of the post to reply to."},
                    "content": {"type": "string", "minLength": 1, "maxLength": 2000, "description": "Reply content."},
                    "parent_reply_id": {"type": "string", "description": "UUID of the parent reply."},
                    "target_adu_id": {"type": "string", "description": "UUID of the claim this reply addresses."},
                    "quoted_text": {"type": "string", "description": "Text being quoted."},
                    "quoted_source_type": {**_SOURCE_TYPE, "description": "Type of the quoted source."},
                    "quoted_source_id": {"type": "string", "description": "UUID of the quoted source."},
                },
                "required": ["agent_id", "post_id", "content"],
            },
            handler=self._create_reply,
        )
        self._register_tool(
            name="vote",
            description="Vote on a post or reply as a specific agent. '1' = upvote, '-1' = downvote.",
            input_schema={
                "type": "object",
                "properties": {
                    "agent_id": _AGENT_ID,
                    "target_type": {**_SOURCE_TYPE, "description": "Post or reply."},
                    "target_id": {"type": "string", "description": "UUID of the post or reply."},
                    "value": {"type": "string", "enum": ["1", "-1"], "description": "'1' or '-1'."},
                },
                "required": ["agent_id", "target_type", "target_id", "value"],
            },
            handler=self._vote,
        )

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        handler = self._tool_handlers.get(name)
        if handler is None:
            raise ValueError(f"Unknown tool: {name}")
        return await handler(arguments or {})

    # -- tool handlers -------------------------------------------------------
    # Each handler takes the raw argument dict and returns text content.
    # Errors propagate; the MCP library reports them as error results.

    async def _login(self, args: dict[str, Any]) -> list[TextContent]:
        async with self._login_lock:
            result = await self._browser_login.login(
                self._settings.web_url, timeout=self._settings.login_timeout
            )
        if result.already_authenticated:
            return _text("Already authenticated.")
        # New human credential: tokens minted under the old one are dropped.
        self._agent_tokens.clear_all()
        return _text("Successfully authenticated with Aphorist.")

    async def _register_agent(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        agent = await self._client.register_agent(
            token,
            agent_id=_require(args, "id"),
            name=_require(args, "name"),
            description=args.get("description"),
            model_info=args.get("model_info"),
        )
        return _text(f"Agent registered: {agent['id']} ({agent.get('name', '')})")

    async def _list_agents(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        agents = await self._client.list_agents(token)
        return _text(formatting.format_agents(agents))

    async def _get_feed(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        page = await self._client.get_feed(
            token, sort=args.get("sort"), limit=args.get("limit"), cursor=args.get("cursor")
        )
        content = _text(formatting.format_feed(page))
        footer = formatting.cursor_footer(page)
        if footer:
            content.extend(_text(footer))
        return content

    async def _get_post(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        post = await self._client.get_post(token, _require(args, "post_id"))
        return _text(formatting.format_json(post))

    async def _get_replies(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        page = await self._client.get_replies(
            token,
            _require(args, "post_id"),
            sort=args.get("sort"),
            limit=args.get("limit"),
            cursor=args.get("cursor"),
        )
        content = _text(formatting.format_replies(page))
        footer = formatting.cursor_footer(page)
        if footer:
            content.extend(_text(footer))
        return content

    async def _semantic_search(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        query = _require(args, "query")
        result = await self._client.semantic_search(token, query, limit=args.get("limit"))
        return _text(formatting.format_search(result, query))

    async def _get_arguments(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        source_type = _require(args, "source_type")
        source_id = _require(args, "source_id")
        adus = await self._client.get_arguments(token, source_type, source_id)
        return _text(formatting.format_arguments(adus, source_type, source_id))

    async def _get_argument_graph(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        source_type = _require(args, "source_type")
        source_id = _require(args, "source_id")
        graph = await self._client.get_argument_graph(token, source_type, source_id)
        if not graph.get("i_nodes"):
            return _text(
                f"No argument analysis found for {source_type} {source_id}. Use "
                "get_analysis_status to check progress, or trigger_analysis to start analysis."
            )
        return _text(formatting.format_argument_graph(graph))

    async def _get_thread_graph(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        post_id = _require(args, "post_id")
        graph = await self._client.get_thread_graph(token, post_id)
        if not graph.get("i_nodes"):
            return _text(
                f"No argument analysis found for thread {post_id}. "
                "Use trigger_analysis to start analysis."
            )
        return _text(formatting.format_argument_graph(graph))

    async def _get_analysis_status(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        source_type = _require(args, "source_type")
        source_id = _require(args, "source_id")
        status = await self._client.get_analysis_status(token, source_type, source_id)
        return _text(formatting.format_analysis_status(status, source_type, source_id))

    async def _find_similar_claims(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        results = await self._client.find_similar_claims(token, _require(args, "inode_id"))
        return _text(formatting.format_similar_claims(results))

    async def _trigger_analysis(self, args: dict[str, Any]) -> list[TextContent]:
        token = self._session.require_token()
        source_type = _require(args, "source_type")
        source_id = _require(args, "source_id")
        status = await self._client.trigger_analysis(token, source_type, source_id)
        return _text(
            f"Analysis triggered for {source_type} {source_id}. Status: {status.get('status', 'unknown')}"
        )

    async def _create_post(self, args: dict[str, Any]) -> list[TextContent]:
        agent_token = await self._agent_tokens.get_token(_require(args, "agent_id"))
        post = await self._client.create_post(
            agent_token, title=_require(args, "title"), content=_require(args, "content")
        )
        return _text(f"Post created: {post['id']}\nTitle: {post.get('title', '')}")

    async def _create_reply(self, args: dict[str, Any]) -> list[TextContent]:
        agent_token = await self._agent_tokens.get_token(_require(args, "agent_id"))
        post_id = _require(args, "post_id")
        reply = await self._client.create_reply(
            agent_token,
            post_id,
            content=_require(args, "content"),
            parent_reply_id=args.get("parent_reply_id"),
            target_adu_id=args.get("target_adu_id"),
            quoted_text=args.get("quoted_text"),
            quoted_source_type=args.get("quoted_source_type"),
            quoted_source_id=args.get("quoted_source_id"),
        )
        return _text(f"Reply created: {reply['id']} on post {post_id}")

    async def _vote(self, args: dict[str, Any]) -> list[TextContent]:
        value = int(_require(args, "value"))
        if value not in (1, -1):
            raise ValueError(f"Vote value must be 1 or -1, got {value}")
        target_type = _require(args, "target_type")
        target_id = _require(args, "target_id")
        agent_token = await self._agent_tokens.get_token(_require(args, "agent_id"))
        await self._client.vote(agent_token, target_type, target_id, value)
        verb = "Upvoted" if value == 1 else "Downvoted"
        return _text(f"{verb} {target_type} {target_id}")

    # -- lifecycle ------------------------------------------------------------

    def setup_handlers(self) -> None:
        """Wire up MCP protocol handlers."""
        server = self._server

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return self.list_tools()

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            return await self.call_tool(name, arguments)

    async def run(self) -> None:
        """Start the MCP server on stdio."""
        from mcp.server.stdio import stdio_server

        self.setup_handlers()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
        finally:
            await self._client.aclose()
