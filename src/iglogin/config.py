"""Configuration loading with XDG paths and precedence resolution.

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.iglogin/`` on macOS and Windows. See :func:`get_config_dir`.
* **Config files** -- JSON or YAML mappings whose keys are
  :class:`~iglogin.models.LoginConfig` fields, plus
  ``app_secret_source`` (a credential source descriptor, see below).
* **Environment** -- ``IGLOGIN_*`` variables, see :data:`ENV_VARS`.
* **Precedence resolution** -- :func:`resolve_config` merges explicit
  overrides, environment variables, the config file and model defaults.
* **Credential resolution** -- :func:`resolve_credential` reads secrets
  from env vars, files or an interactive prompt so the app secret never
  has to sit in a config file.
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from iglogin.exceptions import ConfigError
from iglogin.models import LoginConfig

_APP_NAME = "iglogin"
_CONFIG_FILENAMES = ("config.yaml", "config.yml", "config.json")

ENV_VARS: dict[str, str] = {
    "IGLOGIN_APP_ID": "app_id",
    "IGLOGIN_APP_SECRET": "app_secret",
    "IGLOGIN_REDIRECT_URL": "redirect_url",
    "IGLOGIN_SCOPES": "scopes",
    "IGLOGIN_RESPONSE_TYPE": "response_type",
    "IGLOGIN_LOCALE": "locale",
}
"""Environment variable -> :class:`~iglogin.models.LoginConfig` field."""


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def get_config_dir() -> Path:
    """Return the configuration directory (not created).

    On Linux/BSD: ``$XDG_CONFIG_HOME/iglogin/`` (default ``~/.config/iglogin/``).
    On macOS/Windows: ``~/.iglogin/``.
    """
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_CONFIG_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".config"
        return base / _APP_NAME
    return Path.home() / f".{_APP_NAME}"


def default_config_path() -> Optional[Path]:
    """Return the config file to use when none is given explicitly.

    ``$IGLOGIN_CONFIG`` wins; otherwise the first existing
    ``config.yaml`` / ``config.yml`` / ``config.json`` in
    :func:`get_config_dir`.
    """
    env_path = os.environ.get("IGLOGIN_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    config_dir = get_config_dir()
    for name in _CONFIG_FILENAMES:
        candidate = config_dir / name
        if candidate.is_file():
            return candidate
    return None


# --- Loading ---


def _parse_content(content: str, hint: str = "") -> dict[str, Any]:
    """Parse *content* as JSON unless hinted as YAML, falling back to YAML."""
    if hint != "yaml":
        try:
            result = json.loads(content)
        except json.JSONDecodeError as exc:
            if hint == "json":
                raise ConfigError(f"Invalid JSON: {exc}") from exc
        else:
            if not isinstance(result, dict):
                raise ConfigError(f"Config must be a mapping (got {type(result).__name__})")
            return result

    try:
        result = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid config file: {exc}") from exc
    if result is None:
        return {}
    if not isinstance(result, dict):
        raise ConfigError(f"Config must be a mapping (got {type(result).__name__})")
    return result


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read a JSON or YAML config file into a plain mapping.

    The format is picked from the extension (``.json``, ``.yaml``,
    ``.yml``), falling back to content detection.

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    suffix = path.suffix.lower()
    hint = "json" if suffix == ".json" else "yaml" if suffix in (".yaml", ".yml") else ""
    try:
        return _parse_content(content, hint=hint)
    except ConfigError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def config_from_env() -> dict[str, Any]:
    """Collect config values from ``IGLOGIN_*`` environment variables.

    ``IGLOGIN_SCOPES`` is a comma-separated list.
    """
    values: dict[str, Any] = {}
    for var, field_name in ENV_VARS.items():
        value = os.environ.get(var)
        if value:
            values[field_name] = value
    return values


# --- Precedence resolution ---


def resolve_config(
    config_path: str | Path | None = None,
    overrides: Optional[dict[str, Any]] = None,
    resolve_secret: bool = True,
) -> LoginConfig:
    """Build the effective :class:`~iglogin.models.LoginConfig`.

    Precedence (high to low):
        1. *overrides* (CLI flags); ``None`` values are skipped
        2. Environment variables (:data:`ENV_VARS`)
        3. The config file (*config_path*, or :func:`default_config_path`)
        4. Model defaults

    ``app_secret`` (a literal) and ``app_secret_source`` (a descriptor for
    :func:`resolve_credential`) name the same setting: the highest level
    that sets either wins, and only that source is resolved. With
    *resolve_secret* false the secret is dropped without being resolved,
    for callers that never use it.

    Raises:
        ConfigError: If a file or credential source cannot be read or the
            merged values fail validation.
    """
    path = Path(config_path) if config_path is not None else default_config_path()
    file_values = load_config_file(path) if path is not None else {}

    merged: dict[str, Any] = {}
    for layer in (file_values, config_from_env(), overrides or {}):
        layer = {k: v for k, v in layer.items() if v is not None}
        if "app_secret" in layer or "app_secret_source" in layer:
            merged.pop("app_secret", None)
            merged.pop("app_secret_source", None)
        merged.update(layer)

    source = merged.pop("app_secret_source", None)
    if not resolve_secret:
        merged.pop("app_secret", None)
    elif source:
        merged["app_secret"] = resolve_credential(source)

    try:
        return LoginConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid login configuration: {exc}") from exc


# --- Credential source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - ``"prompt"`` -- prompts user interactively (requires a TTY)

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError(
                "Cannot prompt for the app secret: stdin is not a TTY (source: prompt)"
            )
        return getpass.getpass("App secret: ")

    raise ConfigError(f"Unknown credential source format: {source}")
