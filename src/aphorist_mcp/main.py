"""CLI entry point: run the MCP server or log in interactively."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from aphorist_mcp.config import ConfigError, load_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aphorist-mcp",
        description="Aphorist MCP server: browser login and per-agent tokens for AI agents",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a settings YAML file (keys under 'aphorist:')",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the MCP server on stdio (default)")
    login = commands.add_parser("login", help="Log in through the browser and print the user token")
    login.add_argument(
        "--no-verify",
        action="store_true",
        help="Skip verifying the token against the API after login",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    # stdout is the MCP transport; logs go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        logging.getLogger(__name__).error("Invalid configuration: %s", exc)
        return 2

    if args.command == "login":
        from aphorist_mcp.prompt.cli import run_login_cli

        return run_login_cli(settings, verify=not args.no_verify)

    from aphorist_mcp.mcp.server import AphoristMCPServer

    server = AphoristMCPServer(settings)
    asyncio.run(server.run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
