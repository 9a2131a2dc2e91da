"""Config loading for ParcelGate.

Reads `.parcelgate/config.yaml` (or `~/.parcelgate/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided, for testing or explicit override)
  2. PARCELGATE_CONFIG environment variable (if set)
  3. `.parcelgate/config.yaml` (working directory, for development)
  4. `~/.parcelgate/config.yaml` (home directory, for production deployments)

Environment variable overrides (applied after the file is parsed):
  PARCELGATE_PORT           overrides server.port
  PARCELGATE_JWT_SECRET     overrides auth.jwt_secret
  PARCELGATE_KEYS_DB_PATH   overrides keys.db_path
  PARCELGATE_USERS_DB_PATH  overrides users.db_path
  PARCELGATE_BASE_URL       overrides integration.base_url
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Optional

import yaml

from parcelgate.constants import (
    API_KEY_HEADER,
    API_KEY_HEADER_ALIASES,
    DEFAULT_KEY_EXPIRY_DAYS,
    WEBHOOK_KEY_HEADER_ALIASES,
)
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1
SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# PyJWT symmetric algorithms accepted for session verification.
VALID_JWT_ALGORITHMS: frozenset[str] = frozenset({"HS256", "HS384", "HS512"})

# Placeholder secret used when nothing is configured. load_config() warns.
INSECURE_DEV_SECRET = "parcelgate-dev-secret-change-me-0123456789"

DEFAULT_CONFIG_PATHS = [
    ".parcelgate/config.yaml",
    os.path.expanduser("~/.parcelgate/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class AuthConfig:
    """Credential resolution settings.

    api_key_header:         canonical machine-credential header name
    api_key_aliases:        additional machine-credential header names
    webhook_header_aliases: header names accepted on webhook routes
    jwt_secret:             HMAC secret for human session tokens
    jwt_algorithm:          one of VALID_JWT_ALGORITHMS
    jwt_leeway_seconds:     clock-skew tolerance on exp/iat
    """

    api_key_header: str = API_KEY_HEADER
    api_key_aliases: list[str] = field(default_factory=lambda: list(API_KEY_HEADER_ALIASES))
    webhook_header_aliases: list[str] = field(
        default_factory=lambda: list(WEBHOOK_KEY_HEADER_ALIASES)
    )
    jwt_secret: str = INSECURE_DEV_SECRET
    jwt_algorithm: str = "HS256"
    jwt_leeway_seconds: int = 0


@dataclass
class KeyStoreConfig:
    """API key store configuration."""

    db_path: str = "~/.parcelgate/keys.db"
    default_expiry_days: int = DEFAULT_KEY_EXPIRY_DAYS


@dataclass
class UsersConfig:
    """Location of the user accounts table read for session resolution."""

    db_path: str = "~/.parcelgate/users.db"


@dataclass
class IntegrationConfig:
    """Non-secret metadata returned by the connection-info endpoint."""

    base_url: str = "http://127.0.0.1:8080"
    partner_name: str = "KCD Logistics"
    portal_url: Optional[str] = None


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    """Root configuration object populated from .parcelgate/config.yaml.

    All fields have safe defaults, so ParcelGate can start without any config file
    (but logs a warning while the development JWT secret is in use).
    """

    version: int = SUPPORTED_CONFIG_VERSION
    auth: AuthConfig = field(default_factory=AuthConfig)
    keys: KeyStoreConfig = field(default_factory=KeyStoreConfig)
    users: UsersConfig = field(default_factory=UsersConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On an unsupported auth.jwt_algorithm.
        """
        # ── Auth ──────────────────────────────────────────────────────────────
        auth_raw = raw.get("auth", {}) or {}
        algorithm = auth_raw.get("jwt_algorithm", "HS256")
        if algorithm not in VALID_JWT_ALGORITHMS:
            msg = (
                f"CONFIG ERROR: Invalid auth.jwt_algorithm: '{algorithm}'. "
                f"Supported values: {sorted(VALID_JWT_ALGORITHMS)}."
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)
        auth = AuthConfig(
            api_key_header=auth_raw.get("api_key_header", API_KEY_HEADER),
            api_key_aliases=list(auth_raw.get("api_key_aliases", API_KEY_HEADER_ALIASES)),
            webhook_header_aliases=list(
                auth_raw.get("webhook_header_aliases", WEBHOOK_KEY_HEADER_ALIASES)
            ),
            jwt_secret=auth_raw.get("jwt_secret", INSECURE_DEV_SECRET),
            jwt_algorithm=algorithm,
            jwt_leeway_seconds=auth_raw.get("jwt_leeway_seconds", 0),
        )

        # ── Keys ──────────────────────────────────────────────────────────────
        keys_raw = raw.get("keys", {}) or {}
        keys = KeyStoreConfig(
            db_path=keys_raw.get("db_path", "~/.parcelgate/keys.db"),
            default_expiry_days=keys_raw.get("default_expiry_days", DEFAULT_KEY_EXPIRY_DAYS),
        )

        users_raw = raw.get("users", {}) or {}
        users = UsersConfig(db_path=users_raw.get("db_path", "~/.parcelgate/users.db"))

        # ── Integration ───────────────────────────────────────────────────────
        integration_raw = raw.get("integration", {}) or {}
        integration = IntegrationConfig(
            base_url=integration_raw.get("base_url", "http://127.0.0.1:8080"),
            partner_name=integration_raw.get("partner_name", "KCD Logistics"),
            portal_url=integration_raw.get("portal_url"),
        )

        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server", {}) or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8080),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            auth=auth,
            keys=keys,
            users=users,
            integration=integration,
            server=server,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate ParcelGate configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid ``auth.jwt_algorithm``, or an invalid
                       ``PARCELGATE_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PARCELGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        _warn_insecure(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "ParcelGate refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)
    _warn_insecure(config)

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        api_key_header=config.auth.api_key_header,
        keys_db_path=config.keys.db_path,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If PARCELGATE_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("PARCELGATE_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            msg = (
                f"CONFIG ERROR: PARCELGATE_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)

    env_secret = os.environ.get("PARCELGATE_JWT_SECRET")
    if env_secret:
        config.auth.jwt_secret = env_secret

    env_db_path = os.environ.get("PARCELGATE_KEYS_DB_PATH")
    if env_db_path:
        config.keys.db_path = env_db_path

    env_users_db_path = os.environ.get("PARCELGATE_USERS_DB_PATH")
    if env_users_db_path:
        config.users.db_path = env_users_db_path

    env_base_url = os.environ.get("PARCELGATE_BASE_URL")
    if env_base_url:
        config.integration.base_url = env_base_url.rstrip("/")


def _warn_insecure(config: Config) -> None:
    if config.auth.jwt_secret == INSECURE_DEV_SECRET:
        logger.warning(
            "SECURITY WARNING: using the built-in development JWT secret. "
            "Set PARCELGATE_JWT_SECRET or auth.jwt_secret before deploying."
        )
    elif len(config.auth.jwt_secret) < 32:
        logger.warning("JWT secret is shorter than 32 characters; use a stronger secret")
    if config.server.host == "0.0.0.0":
        logger.warning(
            "ParcelGate is configured to bind on 0.0.0.0 (all interfaces)."
        )
