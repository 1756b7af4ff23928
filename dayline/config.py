"""Config loading for Dayline.

Reads `.dayline/config.yaml` (or `~/.dayline/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field, or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided - for testing or explicit override)
  2. DAYLINE_CONFIG environment variable (if set)
  3. `.dayline/config.yaml` (working directory - for development)
  4. `~/.dayline/config.yaml` (home directory - for production deployments)

Environment variable overrides:
  DAYLINE_PORT    - overrides server.port (takes precedence over config file value)
  DAYLINE_DB_PATH - overrides store.path
  DAYLINE_CONFIG  - sets an explicit config file path to try first
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from dayline.constants import (
    DEFAULT_SIGNATURE_WINDOW_MS,
    MIN_RATE_LIMIT_WINDOW_MS,
    MS_PER_DAY,
)
from dayline.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (DAYLINE_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".dayline/config.yaml",
    os.path.expanduser("~/.dayline/config.yaml"),
]

_DEFAULT_DB_PATH = "~/.dayline/dayline.db"


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class AuthConfig:
    """Signed-request verification settings.

    signature_window_ms: maximum |now - x-ts| accepted, in milliseconds.
    """

    signature_window_ms: int = DEFAULT_SIGNATURE_WINDOW_MS


@dataclass
class StoreConfig:
    """Local store settings. Ignored when the Supabase store is selected."""

    path: str = _DEFAULT_DB_PATH
    counter_retention_days: int = 7


@dataclass
class RateLimitPolicy:
    """One fixed-window policy: at most `limit` calls per `window_ms`."""

    limit: int
    window_ms: int


@dataclass
class RateLimitConfig:
    """Per-endpoint rate-limit policies."""

    register: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=5, window_ms=60 * 60 * 1000)
    )
    rename: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=5, window_ms=24 * 60 * 60 * 1000)
    )


@dataclass
class Config:
    """Root configuration object populated from .dayline/config.yaml.

    All fields have safe defaults - Dayline can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a signature window or rate-limit policy that the
                           verifier or limiter would reject at request time.
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server", {}) or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8080),
        )

        # ── Auth ──────────────────────────────────────────────────────────────
        auth_raw = raw.get("auth", {}) or {}
        window_ms = auth_raw.get("signature_window_ms", DEFAULT_SIGNATURE_WINDOW_MS)
        if not isinstance(window_ms, int) or isinstance(window_ms, bool) or window_ms < 1000:
            _config_error(
                f"Invalid auth.signature_window_ms: {window_ms!r}. "
                "Must be an integer number of milliseconds >= 1000."
            )
        auth = AuthConfig(signature_window_ms=window_ms)

        # ── Rate limits ───────────────────────────────────────────────────────
        limits_raw = raw.get("rate_limits", {}) or {}
        defaults = RateLimitConfig()
        rate_limits = RateLimitConfig(
            register=_parse_policy("register", limits_raw.get("register"), defaults.register),
            rename=_parse_policy("rename", limits_raw.get("rename"), defaults.rename),
        )

        # ── Store ─────────────────────────────────────────────────────────────
        # Retention is checked against the rate limits, so they are parsed first.
        store_raw = raw.get("store", {}) or {}
        store = StoreConfig(
            path=store_raw.get("path", _DEFAULT_DB_PATH),
            counter_retention_days=_parse_retention(
                store_raw.get("counter_retention_days", 7), rate_limits
            ),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            auth=auth,
            store=store,
            rate_limits=rate_limits,
            path=path,
        )


def _parse_policy(name: str, raw: Any, default: RateLimitPolicy) -> RateLimitPolicy:
    """Merge a `rate_limits.<name>` mapping onto its default policy."""
    if raw is None:
        return RateLimitPolicy(limit=default.limit, window_ms=default.window_ms)
    if not isinstance(raw, dict):
        _config_error(f"rate_limits.{name} must be a mapping with 'limit' and 'window_ms'.")

    limit = raw.get("limit", default.limit)
    window_ms = raw.get("window_ms", default.window_ms)
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        _config_error(f"Invalid rate_limits.{name}.limit: {limit!r}. Must be a positive integer.")
    if (
        not isinstance(window_ms, int)
        or isinstance(window_ms, bool)
        or window_ms < MIN_RATE_LIMIT_WINDOW_MS
    ):
        _config_error(
            f"Invalid rate_limits.{name}.window_ms: {window_ms!r}. "
            f"Must be an integer >= {MIN_RATE_LIMIT_WINDOW_MS}."
        )
    return RateLimitPolicy(limit=limit, window_ms=window_ms)


def _parse_retention(raw: Any, rate_limits: RateLimitConfig) -> int:
    """Validate store.counter_retention_days against the longest rate-limit window.

    The pruner deletes counters by last update, so a retention shorter than a
    window could delete a live counter and reset that window's count.
    """
    if not isinstance(raw, int) or isinstance(raw, bool) or raw <= 0:
        _config_error(
            f"Invalid store.counter_retention_days: {raw!r}. Must be a positive integer."
        )

    longest_window_ms = max(rate_limits.register.window_ms, rate_limits.rename.window_ms)
    min_days = math.ceil(longest_window_ms / MS_PER_DAY)
    if raw < min_days:
        _config_error(
            f"store.counter_retention_days ({raw}) is shorter than the longest "
            f"rate-limit window ({longest_window_ms} ms). Must be at least {min_days}."
        )
    return raw


def _config_error(message: str) -> NoReturn:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate Dayline configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    After loading (or defaulting), ``DAYLINE_PORT`` and ``DAYLINE_DB_PATH`` env vars
    are applied as overrides regardless of whether a config file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid values, or invalid ``DAYLINE_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("DAYLINE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found - using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _config_error(
            f"Failed to parse {found_path}: {exc}\n"
            "Dayline refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _config_error(f"Could not read {found_path}: {exc}")

    # Empty file or non-mapping YAML (e.g. plain scalar)
    if not isinstance(raw, dict):
        if raw is None:
            _config_error(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _config_error(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _config_error(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )

    if version not in SUPPORTED_VERSIONS:
        _config_error(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "Dayline is configured to bind on 0.0.0.0 (all interfaces). "
            "Make sure a reverse proxy sets X-Forwarded-For / X-Real-IP, "
            "otherwise IP-scoped rate limits see the proxy address."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        signature_window_ms=config.auth.signature_window_ms,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Handles:
      DAYLINE_PORT    - overrides config.server.port (integer; SystemExit(1) if invalid)
      DAYLINE_DB_PATH - overrides config.store.path
    """
    env_port = os.environ.get("DAYLINE_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _config_error(
                f"DAYLINE_PORT environment variable is not a valid integer: '{env_port}'"
            )

    env_db_path = os.environ.get("DAYLINE_DB_PATH")
    if env_db_path:
        config.store.path = env_db_path
