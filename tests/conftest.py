"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

from inkpot import db as inkpot_db
from inkpot.blog import COOKIE_NAME, create_app
from inkpot.config import Settings
from inkpot.db import ArticleRepository, create_db_engine

ADMIN_USER = "admin"
ADMIN_PASSWORD = "correct horse battery staple"
# a cheap KDF keeps the suite fast; production uses werkzeug's default
FAST_HASH = "pbkdf2:sha256:1000"

_ip_counter = itertools.count(1)


def unique_ip() -> str:
    """Every client gets its own address so the login limiter never bleeds."""
    n = next(_ip_counter)
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


class FakeClock:
    """
    Naive-UTC clock that moves one second per call, so every write gets a
    distinct, increasing timestamp without time.sleep().
    """

    def __init__(self, start: _dt.datetime):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> _dt.datetime:
        with self._lock:
            self.now += _dt.timedelta(seconds=1)
            return self.now

    def jump(self, **delta) -> None:
        with self._lock:
            self.now += _dt.timedelta(**delta)


# ───────────────────────── fixtures ───────────────────────────────────
@pytest.fixture(autouse=True)
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Patch inkpot.db.utc_now for every test."""
    fake = FakeClock(_dt.datetime(2023, 6, 1, 12, 0, 0))
    monkeypatch.setattr(inkpot_db, "utc_now", fake)
    return fake


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.sqlite3"


@pytest.fixture
def settings(db_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{db_path}",
        admin_username=ADMIN_USER,
        admin_password_hash=generate_password_hash(ADMIN_PASSWORD, method=FAST_HASH),
        secret_key="test-secret-key",
        page_size=3,
        cookie_secure=False,
        blog_name="Test Blog",
        blog_url="http://blog.test",
    )


@pytest.fixture
def repo(db_path: Path) -> Generator[ArticleRepository, None, None]:
    """A repository on its own temporary SQLite file, outside any app."""
    engine = create_db_engine(f"sqlite:///{db_path}", timeout=5)
    r = ArticleRepository(engine)
    r.init_schema()
    yield r
    engine.dispose()


@pytest.fixture
def app(settings: Settings) -> Generator[Flask, None, None]:
    app = create_app(settings)
    app.config.update(TESTING=True)
    yield app
    app.extensions["inkpot"].repo.engine.dispose()


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    with app.test_client() as c:
        c.environ_base["REMOTE_ADDR"] = unique_ip()
        yield c


@dataclass
class AdminClient:
    """A logged-in test client that adds the CSRF field to every POST."""

    client: FlaskClient
    token: str
    csrf: str

    def get(self, *args, **kwargs):
        return self.client.get(*args, **kwargs)

    def post(self, url: str, data: dict | None = None, **kwargs):
        data = dict(data or {})
        data.setdefault("csrf", self.csrf)
        return self.client.post(url, data=data, **kwargs)


def login(client: FlaskClient, password: str = ADMIN_PASSWORD, **extra):
    return client.post(
        "/admin/login",
        data={"username": ADMIN_USER, "password": password, **extra},
    )


def session_token(app: Flask, client: FlaskClient) -> str | None:
    """The raw session token behind the client's signed cookie."""
    cookie = client.get_cookie(COOKIE_NAME)
    if cookie is None:
        return None
    return app.extensions["inkpot"].signer.unsign(cookie.value).decode()


@pytest.fixture
def admin(app: Flask, client: FlaskClient) -> AdminClient:
    rv = login(client)
    assert rv.status_code == 303
    token = session_token(app, client)
    sess = app.extensions["inkpot"].sessions.validate(token)
    return AdminClient(client=client, token=token, csrf=sess.csrf_token)
