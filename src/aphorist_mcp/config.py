"""Runtime settings.

Settings are resolved from three layers, later layers winning:

  1. Built-in defaults.
  2. An optional YAML file (keys under a top-level ``aphorist:`` block).
  3. ``APHORIST_*`` environment variables.

``APHORIST_HTTP_TIMEOUT`` is in milliseconds; every other duration is in
seconds.  The human credential is not a setting: ``SessionState.from_env``
reads ``APHORIST_USER_TOKEN`` directly.
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
from collections.abc import Mapping
from typing import Any

import yaml


class ConfigError(Exception):
    """Raised when the settings file or an environment variable is malformed."""


@dataclasses.dataclass(frozen=True)
class Settings:
    """Resolved configuration for the server and the CLI.

    Attributes:
        api_url:       Base URL of the Aphorist REST API.
        web_url:       Base URL of the Aphorist web app (hosts the login page).
        http_timeout:  Per-request timeout for API calls, in seconds.
        login_timeout: How long a browser login waits for its callback, in seconds.
    """

    api_url: str = "https://api.aphori.st"
    web_url: str = "https://aphori.st"
    http_timeout: float = 30.0
    login_timeout: float = 120.0


_YAML_KEYS = ("api_url", "web_url", "http_timeout", "login_timeout")


def load_settings(
    config_path: str | pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build ``Settings`` from defaults, *config_path* and the environment."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    if config_path is not None:
        values.update(_load_yaml(pathlib.Path(config_path)))

    if env.get("APHORIST_API_URL"):
        values["api_url"] = env["APHORIST_API_URL"]
    if env.get("APHORIST_WEB_URL"):
        values["web_url"] = env["APHORIST_WEB_URL"]
    if env.get("APHORIST_HTTP_TIMEOUT"):
        values["http_timeout"] = _parse_number("APHORIST_HTTP_TIMEOUT", env["APHORIST_HTTP_TIMEOUT"]) / 1000
    if env.get("APHORIST_LOGIN_TIMEOUT"):
        values["login_timeout"] = _parse_number("APHORIST_LOGIN_TIMEOUT", env["APHORIST_LOGIN_TIMEOUT"])

    for key in ("http_timeout", "login_timeout"):
        if key in values and values[key] <= 0:
            raise ConfigError(f"{key} must be positive, got {values[key]}")

    return Settings(**values)


# -- private helpers ---------------------------------------------------------

def _load_yaml(path: pathlib.Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Settings file not found: {path}")
    with open(path) as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Settings file is not valid YAML: {exc}") from exc

    block = data.get("aphorist", {}) if isinstance(data, dict) else None
    if not isinstance(block, dict):
        raise ConfigError("Settings file must contain an 'aphorist' mapping")

    unknown = set(block) - set(_YAML_KEYS)
    if unknown:
        raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")

    values = dict(block)
    for key in ("http_timeout", "login_timeout"):
        if key in values:
            values[key] = _parse_number(key, values[key])
    return values


def _parse_number(name: str, raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
