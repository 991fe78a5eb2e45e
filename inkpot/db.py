"""
Articles, tags, standalone pages and the tables behind them.

Only SQLAlchemy Core expressions are used so the same code runs against
MySQL/MariaDB in production and SQLite in development and tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeout

from inkpot.errors import (
    BlogError,
    NotFound,
    PersistenceError,
    ServiceUnavailable,
    ValidationError,
)

log = logging.getLogger(__name__)

TAG_MAX_LEN = 255
PAGE_TITLE_MAX_LEN = 255
EXCERPT_CHARS = 600
# first path segments already taken by other routes
RESERVED_PAGE_TITLES = frozenset(
    {"admin", "article", "articles", "tag", "tags", "feed", "ping", "page"}
)
_TIMEOUT_HINTS = ("timed out", "timeout", "lock wait", "database is locked")

################################################################################
# Schema
################################################################################
metadata = MetaData()

# microsecond precision on MySQL so last-writer-wins is visible in updated_at
_Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql", "mariadb")
# tag names are exact-match keys: binary collation on MySQL
_TagName = String(TAG_MAX_LEN).with_variant(
    mysql.VARCHAR(TAG_MAX_LEN, charset="utf8mb4", collation="utf8mb4_bin"),
    "mysql",
    "mariadb",
)
_Body = Text().with_variant(mysql.LONGTEXT(), "mysql", "mariadb")

articles = Table(
    "articles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", Text, nullable=False),
    Column("content", _Body, nullable=False),
    Column("created_at", _Timestamp, nullable=False),
    Column("updated_at", _Timestamp, nullable=False),
    Index("ix_articles_created_at", "created_at"),
    sqlite_autoincrement=True,  # never hand out a deleted id again
    mysql_charset="utf8mb4",
)

tags = Table(
    "tags",
    metadata,
    Column("name", _TagName, primary_key=True),
    mysql_charset="utf8mb4",
)

article_tags = Table(
    "article_tags",
    metadata,
    Column(
        "article_id",
        Integer,
        ForeignKey("articles.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_name", _TagName, ForeignKey("tags.name"), primary_key=True),
    Column("position", Integer, nullable=False, default=0),
    Index("ix_article_tags_tag_name", "tag_name"),
    mysql_charset="utf8mb4",
)

# standalone pages served at /<title> and linked from the navigation
pages = Table(
    "pages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(PAGE_TITLE_MAX_LEN), nullable=False, unique=True),
    Column("content", _Body, nullable=False),
    Column("created_at", _Timestamp, nullable=False),
    Column("updated_at", _Timestamp, nullable=False),
    sqlite_autoincrement=True,
    mysql_charset="utf8mb4",
)


################################################################################
# Records
################################################################################
@dataclass(frozen=True)
class Article:
    id: int
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ArticleSummary:
    """List-view row: the body is cut to its first ``EXCERPT_CHARS`` chars."""

    id: int
    title: str
    excerpt: str
    created_at: datetime
    updated_at: datetime
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class TagCount:
    name: str
    count: int


@dataclass(frozen=True)
class Page:
    id: int
    title: str
    content: str
    created_at: datetime
    updated_at: datetime


def utc_now() -> datetime:
    """Naive UTC, the form DATETIME columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


################################################################################
# Input helpers
################################################################################
def normalize_tags(raw: str | Iterable[str] | None) -> list[str]:
    """
    Turn ``"a, b,,a"`` (or an iterable of names) into ``["a", "b"]``.

    Whitespace is stripped, empty names dropped, duplicates removed while
    keeping the first occurrence so the author's order survives.
    """
    if raw is None:
        return []
    pieces = raw.split(",") if isinstance(raw, str) else list(raw)
    out: list[str] = []
    seen: set[str] = set()
    for piece in pieces:
        name = (piece or "").strip()
        if not name or name in seen:
            continue
        if len(name) > TAG_MAX_LEN:
            raise ValidationError(
                f"Tag names are limited to {TAG_MAX_LEN} characters.", field="tags"
            )
        seen.add(name)
        out.append(name)
    return out


def _require_text(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"The {field} must not be empty.", field=field)
    return value


def _require_page_title(value: str | None) -> str:
    title = _require_text(value, "title").strip()
    if len(title) > PAGE_TITLE_MAX_LEN:
        raise ValidationError(
            f"Page titles are limited to {PAGE_TITLE_MAX_LEN} characters.", field="title"
        )
    if "/" in title:
        raise ValidationError("Page titles must not contain “/”.", field="title")
    if title.lower() in RESERVED_PAGE_TITLES:
        raise ValidationError(f"“{title}” is already used by the blog.", field="title")
    return title


def _require_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationError("Page numbers start at 1.", field="page")
    if page_size < 1:
        raise ValidationError("Page size must be at least 1.", field="page_size")


################################################################################
# Engine
################################################################################
def create_db_engine(url: str, *, timeout: float = 5.0) -> Engine:
    """
    Build the pooled engine shared by every request.

    ``timeout`` bounds both the wait for a pooled connection and the
    driver-level socket / busy timeouts.
    """
    parsed = make_url(url)
    backend = parsed.get_backend_name()
    kwargs: dict = {"pool_pre_ping": True}
    connect_args: dict = {}

    if backend == "sqlite":
        connect_args.update(timeout=timeout, check_same_thread=False)
        if parsed.database not in (None, "", ":memory:"):
            kwargs["pool_timeout"] = timeout
    else:
        connect_args["connect_timeout"] = max(1, int(timeout))
        if backend in ("mysql", "mariadb"):
            connect_args.update(
                read_timeout=max(1, int(timeout)),
                write_timeout=max(1, int(timeout)),
            )
        kwargs.update(pool_timeout=timeout, pool_recycle=3600)

    engine = create_engine(url, connect_args=connect_args, **kwargs)
    if backend == "sqlite":
        _install_sqlite_hooks(engine)
    return engine


def _install_sqlite_hooks(engine: Engine) -> None:
    """
    Let SQLAlchemy, not pysqlite, emit BEGIN so write transactions can
    take the database lock up front (``BEGIN IMMEDIATE``) instead of
    deadlocking on the read-to-write upgrade.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys = ON;")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("sqlite_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def _translate(exc: Exception, operation: str, ident=None) -> PersistenceError:
    msg = f"{operation} failed"
    if isinstance(exc, PoolTimeout):
        return ServiceUnavailable(msg, operation=operation, ident=ident)
    if isinstance(exc, OperationalError):
        text = str(exc.orig or exc).lower()
        if any(hint in text for hint in _TIMEOUT_HINTS):
            return ServiceUnavailable(msg, operation=operation, ident=ident)
    return PersistenceError(msg, operation=operation, ident=ident)


def _reads(operation: str):
    """Run a read on a fresh connection, retrying once on database failure."""

    def decorator(method):
        @wraps(method)
        def wrapped(self, *args, **kwargs):
            ident = args[0] if args else None
            for attempt in (1, 2):
                try:
                    with self.engine.connect() as conn:
                        return method(self, conn, *args, **kwargs)
                except SQLAlchemyError as exc:
                    err = _translate(exc, operation, ident)
                    if attempt == 2:
                        log.error("%s(%r) failed after retry: %s", operation, ident, exc)
                        raise err from exc
                    log.warning("%s(%r) failed, retrying once: %s", operation, ident, exc)

        return wrapped

    return decorator


################################################################################
# Repository
################################################################################
class ArticleRepository:
    """
    All reads and writes of articles, tags and pages.

    Multi-table writes run in one transaction; concurrent updates of the
    same row are serialised so the later commit wins completely.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sqlite = engine.dialect.name == "sqlite"

    def init_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            log.exception("creating schema failed")
            raise _translate(exc, "init_schema") from exc

    @contextmanager
    def _transaction(self, operation: str, ident=None):
        # writes are never retried: a retry could duplicate the write
        try:
            with self.engine.connect() as conn:
                if self._sqlite:
                    conn.execution_options(sqlite_immediate=True)
                with conn.begin():
                    yield conn
        except BlogError:
            raise
        except SQLAlchemyError as exc:
            log.exception("%s(%r) failed", operation, ident)
            raise _translate(exc, operation, ident) from exc

    # -- writes ---------------------------------------------------------------
    def create_article(
        self, title: str, content: str, tags: str | Iterable[str] | None = None
    ) -> int:
        title = _require_text(title, "title").strip()
        content = _require_text(content, "content")
        names = normalize_tags(tags)

        with self._transaction("create_article") as conn:
            now = utc_now()
            res = conn.execute(
                insert(articles).values(
                    title=title, content=content, created_at=now, updated_at=now
                )
            )
            article_id = res.inserted_primary_key[0]
            for pos, name in enumerate(names):
                self._link_tag(conn, article_id, name, pos)

        log.info("created article %s with tags %s", article_id, names)
        return article_id

    def update_article(
        self,
        article_id: int,
        title: str | None = None,
        content: str | None = None,
        tags: str | Iterable[str] | None = None,
    ) -> Article:
        values: dict = {}
        if title is not None:
            values["title"] = _require_text(title, "title").strip()
        if content is not None:
            values["content"] = _require_text(content, "content")
        names = normalize_tags(tags) if tags is not None else None

        with self._transaction("update_article", article_id) as conn:
            locked = conn.execute(
                select(articles.c.id)
                .where(articles.c.id == article_id)
                .with_for_update()
            ).first()
            if locked is None:
                raise NotFound(f"article {article_id} does not exist")

            # stamp only once the row lock is held
            values["updated_at"] = utc_now()
            conn.execute(
                update(articles).where(articles.c.id == article_id).values(**values)
            )
            if names is not None:
                self._replace_tags(conn, article_id, names)
            article = self._fetch(conn, article_id)

        log.info("updated article %s (%s)", article_id, ", ".join(sorted(values)))
        return article

    def delete_article(self, article_id: int) -> None:
        """Remove the article and its tag links; the tags themselves stay."""
        with self._transaction("delete_article", article_id) as conn:
            conn.execute(
                delete(article_tags).where(article_tags.c.article_id == article_id)
            )
            res = conn.execute(delete(articles).where(articles.c.id == article_id))
            if res.rowcount == 0:
                raise NotFound(f"article {article_id} does not exist")
        log.info("deleted article %s", article_id)

    def _ensure_tag(self, conn, name: str) -> None:
        if conn.execute(select(tags.c.name).where(tags.c.name == name)).first():
            return
        try:
            with conn.begin_nested():
                conn.execute(insert(tags).values(name=name))
        except IntegrityError:
            # created by a concurrent writer between our SELECT and INSERT
            log.debug("tag %r appeared concurrently", name)

    def _link_tag(self, conn, article_id: int, name: str, position: int) -> None:
        self._ensure_tag(conn, name)
        conn.execute(
            insert(article_tags).values(
                article_id=article_id, tag_name=name, position=position
            )
        )

    def _replace_tags(self, conn, article_id: int, names: list[str]) -> None:
        """Diff the stored tag set against *names* and rewrite positions."""
        current = {
            r.tag_name: r.position
            for r in conn.execute(
                select(article_tags.c.tag_name, article_tags.c.position).where(
                    article_tags.c.article_id == article_id
                )
            )
        }
        wanted = set(names)

        gone = [n for n in current if n not in wanted]
        if gone:
            conn.execute(
                delete(article_tags).where(
                    article_tags.c.article_id == article_id,
                    article_tags.c.tag_name.in_(gone),
                )
            )

        for pos, name in enumerate(names):
            if name not in current:
                self._link_tag(conn, article_id, name, pos)
            elif current[name] != pos:
                conn.execute(
                    update(article_tags)
                    .where(
                        article_tags.c.article_id == article_id,
                        article_tags.c.tag_name == name,
                    )
                    .values(position=pos)
                )

    # -- reads ----------------------------------------------------------------
    def _tags_for(self, conn, ids: list[int]) -> dict[int, tuple[str, ...]]:
        if not ids:
            return {}
        out: dict[int, list[str]] = {i: [] for i in ids}
        rows = conn.execute(
            select(article_tags.c.article_id, article_tags.c.tag_name)
            .where(article_tags.c.article_id.in_(ids))
            .order_by(article_tags.c.article_id, article_tags.c.position)
        )
        for r in rows:
            out[r.article_id].append(r.tag_name)
        return {k: tuple(v) for k, v in out.items()}

    def _fetch(self, conn, article_id: int) -> Article:
        row = conn.execute(select(articles).where(articles.c.id == article_id)).first()
        if row is None:
            raise NotFound(f"article {article_id} does not exist")
        return Article(
            id=row.id,
            title=row.title,
            content=row.content,
            created_at=row.created_at,
            updated_at=row.updated_at,
            tags=self._tags_for(conn, [row.id])[row.id],
        )

    @_reads("get_article")
    def get_article(self, conn, article_id: int) -> Article:
        return self._fetch(conn, article_id)

    @_reads("list_articles")
    def list_articles(
        self, conn, page: int = 1, page_size: int = 10, tag_filter: str | None = None
    ) -> list[ArticleSummary]:
        """Newest first, ``page`` is 1-based."""
        _require_paging(page, page_size)
        q = select(
            articles.c.id,
            articles.c.title,
            func.substr(articles.c.content, 1, EXCERPT_CHARS).label("excerpt"),
            articles.c.created_at,
            articles.c.updated_at,
        )
        if tag_filter is not None:
            q = q.join(article_tags, article_tags.c.article_id == articles.c.id).where(
                article_tags.c.tag_name == tag_filter
            )
        q = (
            q.order_by(articles.c.created_at.desc(), articles.c.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        rows = conn.execute(q).all()
        tag_map = self._tags_for(conn, [r.id for r in rows])
        return [
            ArticleSummary(
                id=r.id,
                title=r.title,
                excerpt=r.excerpt or "",
                created_at=r.created_at,
                updated_at=r.updated_at,
                tags=tag_map[r.id],
            )
            for r in rows
        ]

    @_reads("count_articles")
    def count_articles(self, conn, tag_filter: str | None = None) -> int:
        q = select(func.count()).select_from(articles)
        if tag_filter is not None:
            q = (
                select(func.count())
                .select_from(article_tags)
                .where(article_tags.c.tag_name == tag_filter)
            )
        return conn.execute(q).scalar_one()

    @_reads("all_articles")
    def all_articles(self, conn) -> list[Article]:
        rows = conn.execute(
            select(articles).order_by(articles.c.created_at.desc(), articles.c.id.desc())
        ).all()
        tag_map = self._tags_for(conn, [r.id for r in rows])
        return [
            Article(
                id=r.id,
                title=r.title,
                content=r.content,
                created_at=r.created_at,
                updated_at=r.updated_at,
                tags=tag_map[r.id],
            )
            for r in rows
        ]

    @_reads("list_tags")
    def list_tags(self, conn, include_empty: bool = False) -> list[TagCount]:
        """
        Tags with their article counts, most used first.

        Tags whose articles were all deleted still exist; they are only
        listed when ``include_empty`` is set.
        """
        num = func.count(article_tags.c.article_id).label("num")
        if include_empty:
            q = (
                select(tags.c.name.label("name"), num)
                .select_from(
                    tags.outerjoin(article_tags, article_tags.c.tag_name == tags.c.name)
                )
                .group_by(tags.c.name)
            )
        else:
            q = select(article_tags.c.tag_name.label("name"), num).group_by(
                article_tags.c.tag_name
            )
        q = q.order_by(num.desc(), "name")
        return [TagCount(name=r.name, count=r.num) for r in conn.execute(q)]

    @_reads("latest_update")
    def latest_update(self, conn) -> datetime | None:
        return conn.execute(select(func.max(articles.c.updated_at))).scalar()

    @_reads("tag_exists")
    def tag_exists(self, conn, name: str) -> bool:
        """True for every tag ever used, even one that no article carries now."""
        return conn.execute(select(tags.c.name).where(tags.c.name == name)).first() is not None

    # -- pages ----------------------------------------------------------------
    def _title_taken(self, conn, title: str, except_id: int | None = None) -> bool:
        q = select(pages.c.id).where(func.lower(pages.c.title) == title.lower())
        if except_id is not None:
            q = q.where(pages.c.id != except_id)
        return conn.execute(q).first() is not None

    def _write_page(self, conn, stmt, title: str | None):
        try:
            with conn.begin_nested():
                return conn.execute(stmt)
        except IntegrityError:
            raise ValidationError(
                f"A page called “{title}” already exists.", field="title"
            ) from None

    def create_page(self, title: str, content: str) -> int:
        title = _require_page_title(title)
        content = _require_text(content, "content")

        with self._transaction("create_page") as conn:
            if self._title_taken(conn, title):
                raise ValidationError(
                    f"A page called “{title}” already exists.", field="title"
                )
            now = utc_now()
            res = self._write_page(
                conn,
                insert(pages).values(
                    title=title, content=content, created_at=now, updated_at=now
                ),
                title,
            )
            page_id = res.inserted_primary_key[0]

        log.info("created page %s (%r)", page_id, title)
        return page_id

    def update_page(
        self, page_id: int, title: str | None = None, content: str | None = None
    ) -> Page:
        values: dict = {}
        if title is not None:
            values["title"] = _require_page_title(title)
        if content is not None:
            values["content"] = _require_text(content, "content")

        with self._transaction("update_page", page_id) as conn:
            locked = conn.execute(
                select(pages.c.id).where(pages.c.id == page_id).with_for_update()
            ).first()
            if locked is None:
                raise NotFound(f"page {page_id} does not exist")
            if "title" in values and self._title_taken(conn, values["title"], page_id):
                raise ValidationError(
                    f"A page called “{values['title']}” already exists.", field="title"
                )

            values["updated_at"] = utc_now()
            self._write_page(
                conn,
                update(pages).where(pages.c.id == page_id).values(**values),
                values.get("title"),
            )
            page = self._fetch_page(conn, pages.c.id == page_id, page_id)

        log.info("updated page %s (%s)", page_id, ", ".join(sorted(values)))
        return page

    def delete_page(self, page_id: int) -> None:
        with self._transaction("delete_page", page_id) as conn:
            res = conn.execute(delete(pages).where(pages.c.id == page_id))
            if res.rowcount == 0:
                raise NotFound(f"page {page_id} does not exist")
        log.info("deleted page %s", page_id)

    def _fetch_page(self, conn, clause, ident) -> Page:
        row = conn.execute(select(pages).where(clause)).first()
        if row is None:
            raise NotFound(f"page {ident!r} does not exist")
        return Page(
            id=row.id,
            title=row.title,
            content=row.content,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @_reads("get_page")
    def get_page(self, conn, page_id: int) -> Page:
        return self._fetch_page(conn, pages.c.id == page_id, page_id)

    @_reads("get_page_by_title")
    def get_page_by_title(self, conn, title: str) -> Page:
        """Case-insensitive lookup, so ``/About`` and ``/about`` are one page."""
        return self._fetch_page(conn, func.lower(pages.c.title) == title.lower(), title)

    @_reads("list_pages")
    def list_pages(self, conn) -> list[Page]:
        rows = conn.execute(select(pages).order_by(pages.c.id.desc())).all()
        return [
            Page(
                id=r.id,
                title=r.title,
                content=r.content,
                created_at=r.created_at,
                updated_at=r.updated_at,
            )
            for r in rows
        ]

    @_reads("page_titles")
    def page_titles(self, conn) -> list[str]:
        """Titles for the navigation bar, oldest page first."""
        return list(conn.execute(select(pages.c.title).order_by(pages.c.id)).scalars())
