"""
Admin sessions: one credential, many opaque tokens.

Lifecycle of a token::

    active ──(expires_at passes)──▶ expired
       └─────────(logout)─────────▶ revoked

Expiry is fixed from creation (never sliding) and checked lazily on
``validate``; ``login`` also sweeps finished sessions so the store stays
bounded without a background thread.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterator

from werkzeug.security import check_password_hash, generate_password_hash

from inkpot.errors import AuthError

log = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits from the OS CSPRNG
CSRF_BYTES = 16
SHARDS_DEFAULT = 16


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class Session:
    token: str
    owner: str
    created_at: datetime
    expires_at: datetime
    csrf_token: str
    state: SessionState = SessionState.ACTIVE

    def __repr__(self) -> str:  # keep tokens out of logs and tracebacks
        return (
            f"Session(owner={self.owner!r}, state={self.state.value}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


###############################################################################
# Store
###############################################################################
class SessionStore:
    """
    In-memory ``token → Session`` map split into independently locked shards.

    Every transition of one token happens under that token's shard lock,
    so a token's lifecycle is linearizable while unrelated tokens never
    wait on each other.  Anything offering ``locked`` and ``sweep`` can be
    passed to :class:`SessionManager` instead (tests use a fake).
    """

    def __init__(self, shards: int = SHARDS_DEFAULT):
        if shards < 1:
            raise ValueError("need at least one shard")
        self._shards: list[dict[str, Session]] = [{} for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]

    def _index(self, token: str) -> int:
        return hash(token) % len(self._shards)

    @contextmanager
    def locked(self, token: str) -> Iterator[dict[str, Session]]:
        """Hold the lock of *token*'s shard and yield that shard's dict."""
        i = self._index(token)
        with self._locks[i]:
            yield self._shards[i]

    def sweep(self, now: datetime) -> int:
        """Drop every session whose lifetime is over; returns how many."""
        dropped = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                dead = [t for t, s in shard.items() if now >= s.expires_at]
                for t in dead:
                    del shard[t]
                dropped += len(dead)
        return dropped

    def __len__(self) -> int:
        return sum(len(s) for s in self._shards)


###############################################################################
# Manager
###############################################################################
class SessionManager:
    """Checks the admin credential and owns every session transition."""

    def __init__(
        self,
        username: str,
        password_hash: str,
        *,
        duration: timedelta,
        store: SessionStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.username = username
        self._password_hash = password_hash
        self.duration = duration
        self.store = store if store is not None else SessionStore()
        self._clock = clock
        self._dummy_hash = _dummy_hash_like(password_hash)

    @classmethod
    def from_settings(cls, settings, *, store: SessionStore | None = None, clock=utc_now):
        return cls(
            settings.admin_username,
            settings.admin_password_hash,
            duration=settings.session_duration,
            store=store,
            clock=clock,
        )

    def check_credentials(self, username: str | None, password: str | None) -> bool:
        """
        Constant-time credential check.

        • username: ``hmac.compare_digest`` over UTF-8 bytes
        • password: ``check_password_hash`` (salted KDF + compare_digest)

        An unknown username is still run through a dummy hash of the same
        kind, so response time does not reveal whether it exists.
        """
        user_ok = hmac.compare_digest(
            (username or "").encode("utf-8"), self.username.encode("utf-8")
        )
        target = self._password_hash if user_ok else self._dummy_hash
        pw_ok = check_password_hash(target, password or "")
        return user_ok and pw_ok

    def login(self, username: str | None, password: str | None) -> Session:
        if not self.check_credentials(username, password):
            raise AuthError()

        now = self._clock()
        swept = self.store.sweep(now)
        if swept:
            log.debug("swept %d finished sessions", swept)

        token = secrets.token_urlsafe(TOKEN_BYTES)
        sess = Session(
            token=token,
            owner=self.username,
            created_at=now,
            expires_at=now + self.duration,
            csrf_token=secrets.token_urlsafe(CSRF_BYTES),
        )
        with self.store.locked(token) as sessions:
            sessions[token] = sess
        log.info("session opened for %s, expires %s", sess.owner, sess.expires_at)
        return sess

    def validate(self, token: str | None) -> Session | None:
        """The live session for *token*, or ``None`` (unknown, expired, revoked)."""
        if not token:
            return None
        now = self._clock()
        with self.store.locked(token) as sessions:
            sess = sessions.get(token)
            if sess is None:
                log.debug("rejected unknown session token")
                return None
            if sess.state is not SessionState.ACTIVE:
                log.debug("rejected %s session", sess.state.value)
                return None
            if now >= sess.expires_at:
                sessions[token] = replace(sess, state=SessionState.EXPIRED)
                log.debug("rejected expired session")
                return None
            return sess

    def logout(self, token: str | None) -> None:
        """Revoke *token*; unknown or already dead tokens are fine."""
        if not token:
            return
        with self.store.locked(token) as sessions:
            sess = sessions.get(token)
            if sess is None or sess.state is not SessionState.ACTIVE:
                return
            # tombstone until natural expiry so a replay is logged as "revoked"
            sessions[token] = replace(sess, state=SessionState.REVOKED)
        log.info("session closed for %s", sess.owner)

    def purge_expired(self) -> int:
        return self.store.sweep(self._clock())


def _dummy_hash_like(password_hash: str) -> str:
    """A hash of a random secret using the same method/cost as *password_hash*."""
    method = password_hash.split("$", 1)[0]
    try:
        return generate_password_hash(secrets.token_hex(16), method=method)
    except ValueError:
        return generate_password_hash(secrets.token_hex(16))
