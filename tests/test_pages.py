"""
tests/test_pages.py
"""
from __future__ import annotations

import pytest
from flask import Flask
from flask.testing import FlaskClient

from conftest import AdminClient
from inkpot.db import ArticleRepository
from inkpot.errors import NotFound, PersistenceError, ValidationError


@pytest.fixture
def app_repo(app: Flask) -> ArticleRepository:
    return app.extensions["inkpot"].repo


# ───────────────────────── repository ─────────────────────────────────
def test_create_then_get(repo: ArticleRepository):
    pid = repo.create_page("  About  ", "Hello *there*")
    pg = repo.get_page(pid)
    assert (pg.title, pg.content) == ("About", "Hello *there*")
    assert pg.created_at == pg.updated_at
    assert repo.count_articles() == 0


def test_lookup_by_title_ignores_case(repo):
    pid = repo.create_page("About", "x")
    assert repo.get_page_by_title("about").id == pid
    assert repo.get_page_by_title("ABOUT").id == pid


@pytest.mark.parametrize(
    "title", ["", "   ", "a/b", "admin", "Tags", "feed", "x" * 256]
)
def test_create_rejects_bad_titles(repo, title):
    with pytest.raises(ValidationError):
        repo.create_page(title, "body")
    assert repo.list_pages() == []


def test_create_rejects_blank_content(repo):
    with pytest.raises(ValidationError):
        repo.create_page("About", "  ")


def test_titles_are_unique_ignoring_case(repo):
    repo.create_page("About", "x")
    with pytest.raises(ValidationError):
        repo.create_page("ABOUT", "y")
    assert [p.title for p in repo.list_pages()] == ["About"]


def test_update_changes_only_given_fields(repo):
    pid = repo.create_page("About", "old")
    before = repo.get_page(pid)

    pg = repo.update_page(pid, content="new")
    assert (pg.title, pg.content) == ("About", "new")
    assert pg.updated_at > before.updated_at
    assert pg.created_at == before.created_at

    assert repo.update_page(pid, title="about").title == "about"


def test_update_cannot_take_another_title(repo):
    repo.create_page("About", "x")
    pid = repo.create_page("Contact", "y")
    with pytest.raises(ValidationError):
        repo.update_page(pid, title="about")
    with pytest.raises(ValidationError):
        repo.update_page(pid, title="ping")
    assert repo.get_page(pid).title == "Contact"


def test_list_orders(repo):
    repo.create_page("First", "x")
    repo.create_page("Second", "x")
    assert [p.title for p in repo.list_pages()] == ["Second", "First"]
    assert repo.page_titles() == ["First", "Second"]


def test_delete_page(repo):
    pid = repo.create_page("About", "x")
    repo.delete_page(pid)
    assert repo.list_pages() == []
    with pytest.raises(NotFound):
        repo.get_page(pid)

    # the title is free again
    assert repo.create_page("About", "again") != pid


def test_missing_pages(repo):
    with pytest.raises(NotFound):
        repo.get_page(9)
    with pytest.raises(NotFound):
        repo.get_page_by_title("nope")
    with pytest.raises(NotFound):
        repo.update_page(9, content="x")
    with pytest.raises(NotFound):
        repo.delete_page(9)


# ───────────────────────── public ─────────────────────────────────────
def test_page_is_served_at_its_title(client: FlaskClient, app_repo):
    app_repo.create_page("About", "Hi *there*")

    rv = client.get("/About")
    assert rv.status_code == 200
    assert b"<em>there</em>" in rv.data
    assert client.get("/about").status_code == 200


@pytest.mark.parametrize("path", ["/nothing", "/favicon.ico"])
def test_unknown_page_is_404(client: FlaskClient, path: str):
    rv = client.get(path)
    assert rv.status_code == 404
    assert b"Page not found" in rv.data


def test_fixed_routes_win(client: FlaskClient, app_repo):
    app_repo.create_page("Articles list", "x")
    assert b"All articles" in client.get("/articles").data
    assert client.get("/ping").data == b"pong"


def test_nav_links_every_page(client: FlaskClient, app_repo):
    app_repo.create_page("About", "x")
    app_repo.create_page("Contact", "y")
    aid = app_repo.create_article("Post", "z")

    for path in ("/", f"/article/{aid}", "/tags", "/nothing"):
        page = client.get(path).get_data(as_text=True)
        assert 'href="/About"' in page, path
        assert 'href="/Contact"' in page, path


def test_nav_title_is_escaped(client: FlaskClient, app_repo):
    app_repo.create_page("<i>x", "y")
    page = client.get("/").get_data(as_text=True)
    assert "&lt;i&gt;x" in page
    assert "<i>x" not in page


def test_nav_survives_database_errors(app: Flask, client: FlaskClient, monkeypatch, caplog):
    def _raise():
        raise PersistenceError("down", operation="page_titles")

    monkeypatch.setattr(app.extensions["inkpot"].repo, "page_titles", _raise)
    assert client.get("/").status_code == 200
    assert "page titles unavailable" in caplog.text


# ───────────────────────── admin ──────────────────────────────────────
def test_dashboard_lists_pages(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "x")
    page = admin.get("/admin").get_data(as_text=True)
    assert "About" in page
    assert f"/admin/edit/page/{pid}" in page
    assert f"/admin/delete/page/{pid}" in page


def test_create_page_via_form(admin: AdminClient, app_repo):
    assert b"New page" in admin.get("/admin/create/page").data

    rv = admin.post("/admin/create/page", {"title": " About ", "content": "hi"})
    assert rv.status_code == 303
    assert rv.headers["Location"].endswith("/About")
    assert app_repo.get_page_by_title("About").content == "hi"


@pytest.mark.parametrize(
    "title, message",
    [("", b"must not be empty"), ("admin", b"already used by the blog"), ("a/b", b"must not contain")],
)
def test_create_page_validation(admin: AdminClient, app_repo, title, message):
    rv = admin.post("/admin/create/page", {"title": title, "content": "kept text"})
    assert rv.status_code == 400
    assert message in rv.data
    assert b"kept text" in rv.data
    assert app_repo.list_pages() == []


def test_create_duplicate_page(admin: AdminClient, app_repo):
    app_repo.create_page("About", "x")
    rv = admin.post("/admin/create/page", {"title": "about", "content": "y"})
    assert rv.status_code == 400
    assert b"already exists" in rv.data


def test_edit_page(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "old body")

    form = admin.get(f"/admin/edit/page/{pid}").get_data(as_text=True)
    assert 'value="About"' in form
    assert "old body" in form

    rv = admin.post(f"/admin/edit/page/{pid}", {"title": "About me", "content": "new body"})
    assert rv.status_code == 303
    assert rv.headers["Location"].endswith("/About%20me")

    assert b"new body" in admin.get("/About%20me").data
    assert admin.get("/About").status_code == 404


def test_edit_page_keeps_fields_missing_from_form(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "body")
    admin.post(f"/admin/edit/page/{pid}", {"content": "only body"})
    pg = app_repo.get_page(pid)
    assert (pg.title, pg.content) == ("About", "only body")


def test_edit_page_validation_and_missing(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "x")
    assert admin.post(f"/admin/edit/page/{pid}", {"content": " "}).status_code == 400
    assert admin.get("/admin/edit/page/999").status_code == 404
    assert admin.post("/admin/edit/page/999", {"title": "x"}).status_code == 404


def test_delete_page(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "x")

    rv = admin.post(f"/admin/delete/page/{pid}")
    assert rv.status_code == 303
    assert rv.headers["Location"].endswith("/admin")

    assert admin.get("/About").status_code == 404
    assert 'href="/About"' not in admin.get("/").get_data(as_text=True)
    assert admin.post(f"/admin/delete/page/{pid}").status_code == 404
    assert admin.get(f"/admin/delete/page/{pid}").status_code == 405


def test_page_shows_edit_link_to_admin(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "x")
    assert f"/admin/edit/page/{pid}" in admin.get("/About").get_data(as_text=True)


def test_page_admin_routes_are_gated(app: Flask, app_repo):
    pid = app_repo.create_page("About", "x")
    with app.test_client() as anon:
        rv = anon.get("/admin/create/page")
        assert rv.status_code == 302
        assert "/admin?next=" in rv.headers["Location"]

        assert anon.post("/admin/create/page", data={"title": "T", "content": "c"}).status_code == 401
        assert anon.post(f"/admin/edit/page/{pid}", data={"title": "T"}).status_code == 401
        assert anon.post(f"/admin/delete/page/{pid}").status_code == 401
        assert f"/admin/edit/page/{pid}" not in anon.get("/About").get_data(as_text=True)

    assert [p.title for p in app_repo.list_pages()] == ["About"]


def test_page_writes_need_csrf(admin: AdminClient, app_repo):
    pid = app_repo.create_page("About", "x")
    assert admin.post(f"/admin/delete/page/{pid}", {"csrf": "wrong"}).status_code == 403
    assert admin.post("/admin/create/page", {"title": "T", "content": "c", "csrf": ""}).status_code == 403
    assert app_repo.get_page(pid).title == "About"
