"""
Resolve runtime settings from the environment.

Nothing here reads a config file: whatever deploys inkpot exports the
variables below and :func:`Settings.from_env` turns them into one frozen
object that is handed to :func:`inkpot.blog.create_app`.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from datetime import timedelta

from werkzeug.security import generate_password_hash

from inkpot.errors import ConfigError

ENV_PREFIX = "INKPOT_"
DEFAULT_DATABASE_URL = "sqlite:///inkpot.sqlite3"
DEFAULT_SESSION_HOURS = 30 * 24
DEFAULT_PAGE_SIZE = 10
DEFAULT_DB_TIMEOUT = 5.0


def _env(key: str, default: str | None = None) -> str | None:
    val = os.environ.get(ENV_PREFIX + key)
    if val is None or not val.strip():
        return default
    return val.strip()


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{key} must be an integer, got {raw!r}")


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{key} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    database_url: str
    admin_username: str
    admin_password_hash: str = field(repr=False)
    session_duration: timedelta = timedelta(hours=DEFAULT_SESSION_HOURS)
    secret_key: str = field(default_factory=lambda: secrets.token_hex(32), repr=False)
    page_size: int = DEFAULT_PAGE_SIZE
    db_timeout: float = DEFAULT_DB_TIMEOUT
    cookie_secure: bool = True
    blog_name: str = "inkpot"
    blog_url: str = "http://localhost:5000"
    highlight_style: str = "nord"

    def __post_init__(self):
        if not self.database_url:
            raise ConfigError("a database URL is required")
        if not self.admin_username:
            raise ConfigError("an admin username is required")
        if not self.admin_password_hash:
            raise ConfigError("an admin password hash is required")
        if self.session_duration <= timedelta(0):
            raise ConfigError("session duration must be positive")
        if self.page_size < 1:
            raise ConfigError("page size must be at least 1")
        if self.db_timeout <= 0:
            raise ConfigError("database timeout must be positive")

    @classmethod
    def with_password(cls, *, admin_password: str, **kwargs) -> "Settings":
        """Build settings from a plaintext password, hashing it exactly once."""
        if not admin_password:
            raise ConfigError("an admin password is required")
        return cls(admin_password_hash=generate_password_hash(admin_password), **kwargs)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Read ``INKPOT_*`` variables.

        • ``INKPOT_ADMIN_PASSWORD_HASH`` wins over ``INKPOT_ADMIN_PASSWORD``;
          the plaintext form is hashed once here and then forgotten.
        • ``INKPOT_SECRET_KEY`` defaults to a fresh random key, which is fine
          because sessions do not survive a restart anyway.
        """
        kwargs = dict(
            database_url=_env("DATABASE_URL", DEFAULT_DATABASE_URL),
            admin_username=_env("ADMIN_USERNAME", ""),
            session_duration=timedelta(
                hours=_env_int("SESSION_HOURS", DEFAULT_SESSION_HOURS)
            ),
            page_size=_env_int("PAGE_SIZE", DEFAULT_PAGE_SIZE),
            db_timeout=_env_float("DB_TIMEOUT", DEFAULT_DB_TIMEOUT),
            cookie_secure=_env("COOKIE_SECURE", "1") != "0",
            blog_name=_env("BLOG_NAME", "inkpot"),
            blog_url=_env("BLOG_URL", "http://localhost:5000"),
            highlight_style=_env("HIGHLIGHT_STYLE", "nord"),
        )
        secret = _env("SECRET_KEY")
        if secret:
            kwargs["secret_key"] = secret

        pw_hash = _env("ADMIN_PASSWORD_HASH")
        if pw_hash:
            return cls(admin_password_hash=pw_hash, **kwargs)
        plain = os.environ.get(ENV_PREFIX + "ADMIN_PASSWORD", "")
        if not plain:
            raise ConfigError(
                f"set {ENV_PREFIX}ADMIN_PASSWORD_HASH or {ENV_PREFIX}ADMIN_PASSWORD"
            )
        return cls.with_password(admin_password=plain, **kwargs)
