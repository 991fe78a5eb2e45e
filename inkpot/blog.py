#!/usr/bin/env python3
"""
A small self-hosted blog: public article, tag and custom pages plus one admin.

Run with ``flask --app inkpot.blog run`` (the factory reads ``INKPOT_*``
environment variables, see :mod:`inkpot.config`).
"""

from __future__ import annotations

import math
import secrets
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from time import time
from typing import DefaultDict
from urllib.parse import urlparse

import click
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    redirect,
    render_template_string,
    request,
    url_for,
)
from flask.cli import with_appcontext
from itsdangerous import BadSignature, Signer
from markupsafe import Markup
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import generate_password_hash

from inkpot.config import Settings
from inkpot.db import Article, ArticleRepository, create_db_engine
from inkpot.errors import (
    AuthError,
    NotFound,
    PersistenceError,
    ServiceUnavailable,
    Unauthorized,
    ValidationError,
)
from inkpot.render import MarkdownRenderer, first_image, truncate
from inkpot.sessions import Session, SessionManager, SessionStore
from inkpot.templates import (
    TEMPL_ADMIN,
    TEMPL_ARTICLE,
    TEMPL_BY_YEAR,
    TEMPL_EDITOR,
    TEMPL_ERROR,
    TEMPL_FEED,
    TEMPL_INDEX,
    TEMPL_LOGIN,
    TEMPL_PAGE,
    TEMPL_PAGE_EDITOR,
    TEMPL_TAGS,
)

################################################################################
# Constants
################################################################################
COOKIE_NAME = "inkpot_session"
COOKIE_SALT = "inkpot-session"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
SUMMARY_LEN = 200
DESCRIPTION_LEN = 160
LOGIN_MAX_ATTEMPTS = 5
LOGIN_WINDOW_SEC = 60

try:
    __version__ = version("inkpot")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"

bp = Blueprint("blog", __name__)


@dataclass
class Blog:
    """Everything the views need, built once per app by :func:`create_app`."""

    settings: Settings
    repo: ArticleRepository
    sessions: SessionManager
    renderer: MarkdownRenderer
    signer: Signer


def _blog() -> Blog:
    return current_app.extensions["inkpot"]


################################################################################
# App factory
################################################################################
def create_app(
    settings: Settings | None = None,
    *,
    session_store: SessionStore | None = None,
    engine=None,
) -> Flask:
    """
    Wire settings, database, renderer and session manager into a Flask app.

    ``session_store`` and ``engine`` can be injected (tests pass fakes or a
    throw-away SQLite engine); otherwise they are built from *settings*.
    """
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.config.update(SECRET_KEY=settings.secret_key)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    if engine is None:
        engine = create_db_engine(settings.database_url, timeout=settings.db_timeout)
    repo = ArticleRepository(engine)
    repo.init_schema()

    app.extensions["inkpot"] = Blog(
        settings=settings,
        repo=repo,
        sessions=SessionManager.from_settings(settings, store=session_store),
        renderer=MarkdownRenderer(highlight_style=settings.highlight_style),
        signer=Signer(settings.secret_key, salt=COOKIE_SALT),
    )
    app.register_blueprint(bp)
    _register_error_handlers(app)
    app.cli.add_command(init_db_command)
    app.cli.add_command(hash_password_command)
    return app


################################################################################
# Template helpers
################################################################################
@bp.app_template_filter("date")
def date_filter(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d") if dt else ""


@bp.app_template_filter("iso")
def iso_filter(dt: datetime | None) -> str:
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _csrf_token() -> str:
    """The CSRF token of the current admin session (empty when logged out)."""
    sess = g.get("admin_session")
    return sess.csrf_token if sess else ""


def _page_titles() -> list[str]:
    """Navigation entries; a broken database must not break the error pages."""
    try:
        return _blog().repo.page_titles()
    except PersistenceError as exc:
        current_app.logger.warning("page titles unavailable: %s", exc)
        return []


@bp.app_context_processor
def inject_globals():
    return {
        "blog_name": _blog().settings.blog_name,
        "logged_in": g.get("admin_session") is not None,
        "csrf_token": _csrf_token,
        "page_titles": _page_titles,
        "version": __version__,
    }


def group_by_year(articles) -> list[tuple[int, list]]:
    """``[(2024, [...]), (2023, [...])]`` keeping the incoming order per year."""
    years: dict[int, list] = {}
    for a in articles:
        years.setdefault(a.created_at.year, []).append(a)
    return sorted(years.items(), key=lambda kv: kv[0], reverse=True)


def article_context(article: Article, body_html: str) -> dict:
    """Structured context handed to the article template."""
    return {
        "article_id": article.id,
        "title": article.title,
        "body_html": Markup(body_html),
        "created_at": article.created_at,
        "updated_at": article.updated_at,
        "tags": list(article.tags),
        "logged_in": g.get("admin_session") is not None,
        "description": truncate(body_html, DESCRIPTION_LEN, is_html=True),
        "image": first_image(article.content),
    }


################################################################################
# Authorization gate
################################################################################
def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def _cookie_token() -> str | None:
    raw = request.cookies.get(COOKIE_NAME)
    if not raw:
        return None
    try:
        return _blog().signer.unsign(raw).decode()
    except BadSignature:
        current_app.logger.info("ignored tampered session cookie from %s", client_ip())
        return None


def _bearer_token() -> str | None:
    auth = request.headers.get("Authorization", "")
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


@bp.before_app_request
def load_admin_session():
    """Resolve the admin session (if any) once per request."""
    g.admin_session = None
    g.session_via_cookie = False

    token = _bearer_token()
    if token is None:
        token = _cookie_token()
        g.session_via_cookie = token is not None
    if token:
        g.admin_session = _blog().sessions.validate(token)


def _csrf_ok(sess: Session) -> bool:
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    return secrets.compare_digest(sess.csrf_token.encode(), sent.encode())


def admin_required(view):
    """
    Gate for admin views.

    • no valid session → :class:`Unauthorized`, the view never runs
    • cookie-authenticated unsafe method → CSRF token must match (403)
    """

    @wraps(view)
    def wrapped(*args, **kwargs):
        sess = g.get("admin_session")
        if sess is None:
            raise Unauthorized()
        if request.method not in SAFE_METHODS and g.get("session_via_cookie"):
            if not _csrf_ok(sess):
                current_app.logger.warning(
                    "CSRF check failed on %s from %s", request.path, client_ip()
                )
                abort(403)
        return view(*args, **kwargs)

    return wrapped


def rate_limit(max_requests: int, window: int = 60):
    """
    Sliding-window limit per client IP.

    IPs whose hits have all expired are dropped by a sweep that runs at
    most once per window, so the table only holds recently seen clients.
    """
    hits: DefaultDict[str, deque] = defaultdict(deque)
    lock = threading.Lock()
    last_sweep = time()

    def _sweep(now: float) -> None:
        for ip in [ip for ip, dq in hits.items() if not dq or now - dq[-1] > window]:
            del hits[ip]

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            nonlocal last_sweep
            now = time()
            ip = client_ip()

            with lock:
                if now - last_sweep > window:
                    _sweep(now)
                    last_sweep = now

                dq = hits[ip]
                while dq and now - dq[0] > window:
                    dq.popleft()

                if len(dq) >= max_requests:
                    retry_after = int(window - (now - dq[0])) + 1
                    return Response(
                        "Too many requests – try again later.",
                        status=429,
                        headers={"Retry-After": str(retry_after)},
                    )
                dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


def _safe_next(target: str | None) -> str | None:
    """Only same-site paths are allowed as post-login redirects."""
    if not target:
        return None
    parts = urlparse(target)
    if parts.scheme or parts.netloc or not target.startswith("/") or target.startswith("//"):
        return None
    return target


def _set_session_cookie(resp: Response, sess: Session) -> None:
    b = _blog()
    resp.set_cookie(
        COOKIE_NAME,
        b.signer.sign(sess.token).decode(),
        max_age=int(b.settings.session_duration.total_seconds()),
        httponly=True,
        secure=b.settings.cookie_secure,
        samesite="Lax",
        path="/",
    )


@bp.after_app_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    if request.path.startswith("/admin"):
        resp.headers["Cache-Control"] = "no-store"
    return resp


################################################################################
# Public pages
################################################################################
def _summary(a) -> dict:
    return {
        "id": a.id,
        "title": a.title,
        "created_at": a.created_at,
        "tags": list(a.tags),
        "summary": truncate(
            _blog().renderer.render(a.excerpt), SUMMARY_LEN, is_html=True
        ),
    }


def _render_page(num: int):
    b = _blog()
    per_page = b.settings.page_size
    total = b.repo.count_articles()
    max_page = max(1, math.ceil(total / per_page))
    if num < 1 or num > max_page:
        raise NotFound(f"page {num} does not exist")

    items = b.repo.list_articles(num, per_page)
    return render_template_string(
        TEMPL_INDEX,
        articles=[_summary(a) for a in items],
        page_num=num,
        max_page=max_page,
        total=total,
    )


@bp.get("/")
def index():
    return _render_page(1)


@bp.get("/page/<int:num>")
def page(num: int):
    return _render_page(num)


@bp.get("/article/<int:article_id>")
def article(article_id: int):
    b = _blog()
    art = b.repo.get_article(article_id)
    body = b.renderer.render(art.content)
    return render_template_string(TEMPL_ARTICLE, **article_context(art, body))


@bp.get("/tag/<path:name>")
def tag(name: str):
    repo = _blog().repo
    # a tag whose articles were all deleted still has a (empty) page
    if not repo.tag_exists(name):
        raise NotFound(f"tag {name!r} does not exist")
    total = repo.count_articles(tag_filter=name)
    items = repo.list_articles(1, max(total, 1), tag_filter=name)
    return render_template_string(
        TEMPL_BY_YEAR, title=f"#{name}", heading=f"Tagged “{name}”", years=group_by_year(items)
    )


@bp.get("/articles")
def archive():
    items = _blog().repo.all_articles()
    return render_template_string(
        TEMPL_BY_YEAR, title="Articles", heading="All articles", years=group_by_year(items)
    )


@bp.get("/tags")
def tag_index():
    return render_template_string(
        TEMPL_TAGS, title="Tags", tag_counts=_blog().repo.list_tags()
    )


@bp.get("/feed")
def feed():
    b = _blog()
    site = b.settings.blog_url.rstrip("/")
    entries = [
        {
            "title": a.title,
            "url": site + url_for("blog.article", article_id=a.id),
            "created_at": a.created_at,
            "updated_at": a.updated_at,
            "tags": a.tags,
            # plain str on purpose: autoescape turns it into type="html" content
            "body_html": b.renderer.render(a.content),
        }
        for a in b.repo.all_articles()
    ]
    xml = render_template_string(
        TEMPL_FEED,
        blog_url=site + "/",
        feed_url=site + url_for("blog.feed"),
        updated=b.repo.latest_update() or datetime(1970, 1, 1),
        entries=entries,
    )
    return Response(xml, mimetype="application/atom+xml")


@bp.get("/ping")
def ping():
    return "pong"


@bp.get("/<title>")
def custom_page(title: str):
    """Standalone pages; fixed routes always win over this catch-all."""
    b = _blog()
    pg = b.repo.get_page_by_title(title)
    return render_template_string(
        TEMPL_PAGE,
        page_id=pg.id,
        title=pg.title,
        body_html=Markup(b.renderer.render(pg.content)),
    )


################################################################################
# Admin: login / logout
################################################################################
@bp.get("/admin")
def admin():
    if g.admin_session is None:
        return render_template_string(
            TEMPL_LOGIN, title="Login", next=_safe_next(request.args.get("next"))
        )
    return render_template_string(
        TEMPL_ADMIN,
        title="Admin",
        articles=_blog().repo.all_articles(),
        pages=_blog().repo.list_pages(),
    )


@bp.post("/admin/login")
@rate_limit(max_requests=LOGIN_MAX_ATTEMPTS, window=LOGIN_WINDOW_SEC)
def login():
    b = _blog()
    username = request.form.get("username", "")
    password = request.form.get("password", "")
    next_url = _safe_next(request.form.get("next"))

    try:
        sess = b.sessions.login(username, password)
    except AuthError as exc:
        current_app.logger.warning(
            "failed admin login for %r from %s", username[:64], client_ip()
        )
        return (
            render_template_string(TEMPL_LOGIN, title="Login", error=str(exc), next=next_url),
            401,
        )

    # never carry an old token across a login
    old = _cookie_token()
    if old:
        b.sessions.logout(old)

    current_app.logger.info("admin login from %s", client_ip())
    resp = redirect(next_url or url_for("blog.admin"), code=303)
    _set_session_cookie(resp, sess)
    return resp


@bp.post("/admin/logout")
def logout():
    token = _bearer_token() or _cookie_token()
    _blog().sessions.logout(token)
    resp = redirect(url_for("blog.index"), code=303)
    resp.delete_cookie(COOKIE_NAME, path="/")
    return resp


################################################################################
# Admin: articles
################################################################################
def _editor(article_id: int | None, *, title="", content="", tags="", error=None):
    return render_template_string(
        TEMPL_EDITOR,
        title="Edit" if article_id else "New article",
        article_id=article_id,
        form_title=title,
        form_content=content,
        form_tags=tags,
        error=error,
    )


@bp.route("/admin/create/article", methods=["GET", "POST"])
@admin_required
def create_article():
    if request.method == "GET":
        return _editor(None)

    form = request.form
    try:
        new_id = _blog().repo.create_article(
            form.get("title", ""), form.get("content", ""), form.get("tags", "")
        )
    except ValidationError as exc:
        return (
            _editor(
                None,
                title=form.get("title", ""),
                content=form.get("content", ""),
                tags=form.get("tags", ""),
                error=str(exc),
            ),
            400,
        )
    return redirect(url_for("blog.article", article_id=new_id), code=303)


@bp.route("/admin/edit/article/<int:article_id>", methods=["GET", "POST"])
@admin_required
def edit_article(article_id: int):
    repo = _blog().repo
    if request.method == "GET":
        art = repo.get_article(article_id)
        return _editor(
            art.id, title=art.title, content=art.content, tags=", ".join(art.tags)
        )

    form = request.form
    try:
        # fields missing from the form stay as they are
        repo.update_article(
            article_id,
            title=form.get("title"),
            content=form.get("content"),
            tags=form.get("tags"),
        )
    except ValidationError as exc:
        return (
            _editor(
                article_id,
                title=form.get("title", ""),
                content=form.get("content", ""),
                tags=form.get("tags", ""),
                error=str(exc),
            ),
            400,
        )
    return redirect(url_for("blog.article", article_id=article_id), code=303)


@bp.post("/admin/delete/article/<int:article_id>")
@admin_required
def delete_article(article_id: int):
    _blog().repo.delete_article(article_id)
    return redirect(url_for("blog.admin"), code=303)


################################################################################
# Admin: pages
################################################################################
def _page_editor(page_id: int | None, *, title="", content="", error=None):
    return render_template_string(
        TEMPL_PAGE_EDITOR,
        title="Edit page" if page_id else "New page",
        page_id=page_id,
        form_title=title,
        form_content=content,
        error=error,
    )


@bp.route("/admin/create/page", methods=["GET", "POST"])
@admin_required
def create_page():
    if request.method == "GET":
        return _page_editor(None)

    form = request.form
    try:
        _blog().repo.create_page(form.get("title", ""), form.get("content", ""))
    except ValidationError as exc:
        return (
            _page_editor(
                None,
                title=form.get("title", ""),
                content=form.get("content", ""),
                error=str(exc),
            ),
            400,
        )
    return redirect(
        url_for("blog.custom_page", title=form.get("title", "").strip()), code=303
    )


@bp.route("/admin/edit/page/<int:page_id>", methods=["GET", "POST"])
@admin_required
def edit_page(page_id: int):
    repo = _blog().repo
    if request.method == "GET":
        pg = repo.get_page(page_id)
        return _page_editor(pg.id, title=pg.title, content=pg.content)

    form = request.form
    try:
        pg = repo.update_page(
            page_id, title=form.get("title"), content=form.get("content")
        )
    except ValidationError as exc:
        return (
            _page_editor(
                page_id,
                title=form.get("title", ""),
                content=form.get("content", ""),
                error=str(exc),
            ),
            400,
        )
    return redirect(url_for("blog.custom_page", title=pg.title), code=303)


@bp.post("/admin/delete/page/<int:page_id>")
@admin_required
def delete_page(page_id: int):
    _blog().repo.delete_page(page_id)
    return redirect(url_for("blog.admin"), code=303)


################################################################################
# Errors
################################################################################
def _error_page(status: int, heading: str, message: str):
    return (
        render_template_string(TEMPL_ERROR, title=heading, heading=heading, message=message),
        status,
    )


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    def on_validation(exc: ValidationError):
        return _error_page(400, "Bad request", str(exc))

    @app.errorhandler(NotFound)
    @app.errorhandler(404)
    def on_not_found(exc):
        return _error_page(
            404, "Page not found", "The page you asked for doesn’t exist."
        )

    @app.errorhandler(Unauthorized)
    def on_unauthorized(exc: Unauthorized):
        if request.method in ("GET", "HEAD"):
            return redirect(url_for("blog.admin", next=request.full_path.rstrip("?")))
        return _error_page(401, "Unauthorized", exc.public_message)

    @app.errorhandler(AuthError)
    def on_auth_error(exc: AuthError):
        return _error_page(401, "Unauthorized", exc.public_message)

    @app.errorhandler(403)
    def on_forbidden(exc: HTTPException):
        return _error_page(403, "Forbidden", "This request was not accepted.")

    @app.errorhandler(PersistenceError)
    def on_persistence(exc: PersistenceError):
        app.logger.error(
            "%s %s: %s(%r) failed", request.method, request.path, exc.operation, exc.ident
        )
        if isinstance(exc, ServiceUnavailable):
            page, status = _error_page(503, "Service unavailable", exc.public_message)
            return page, status, {"Retry-After": "5"}
        return _error_page(500, "Internal Server Error", exc.public_message)

    @app.errorhandler(500)
    def internal_error(exc):
        return _error_page(
            500, "Internal Server Error", "Our fault, not yours. Please try again later."
        )


################################################################################
# CLI
################################################################################
@click.command("init-db")
@with_appcontext
def init_db_command():
    """Create the article, tag and page tables if they are missing."""
    _blog().repo.init_schema()
    click.secho("✅  Schema is in place.", fg="green")


@click.command("hash-password")
@click.password_option(help="Admin password to hash")
def hash_password_command(password: str):
    """Print a hash suitable for INKPOT_ADMIN_PASSWORD_HASH."""
    click.echo(generate_password_hash(password))
