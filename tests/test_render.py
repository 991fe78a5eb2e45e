"""
tests/test_render.py
"""
from __future__ import annotations

import threading
import xml.etree.ElementTree as etree

import pytest

from inkpot.errors import RenderError
from inkpot.render import (
    MarkdownRenderer,
    RenderCache,
    SanitizeTreeprocessor,
    first_image,
    is_safe_url,
    plain_text_html,
    render,
    strip_tags,
    truncate,
)


@pytest.fixture
def renderer() -> MarkdownRenderer:
    return MarkdownRenderer(cache=RenderCache(max_entries=4))


# ───────────────────────── markdown ───────────────────────────────────
def test_bold():
    assert "<strong>bold</strong>" in render("**bold**")


def test_render_is_deterministic(renderer):
    src = "# Title\n\nSome *text* with `code`[^1].\n\n[^1]: a footnote\n"
    assert renderer.render(src) == renderer.render(src) == renderer.convert(src)


def test_fenced_code_is_highlighted():
    html = render("```python\nprint('hi')\n```\n")
    assert "<pre" in html
    assert "style=" in html  # inline pygments styles


def test_tables_and_strikethrough():
    html = render("| a | b |\n|---|---|\n| 1 | 2 |\n\n~~gone~~\n")
    assert "<table>" in html
    assert "<del>gone</del>" in html


# ───────────────────────── sanitizing ─────────────────────────────────
@pytest.mark.parametrize(
    "src",
    [
        "<script>alert(1)</script>",
        "hello <script>alert(1)</script> world",
        "<div onclick=\"alert(1)\">x</div>",
        "<img src=x onerror=alert(1)>",
    ],
)
def test_raw_html_is_escaped(src):
    html = render(src)
    assert "<script" not in html
    assert "<img" not in html
    assert "<div" not in html
    assert "&lt;" in html


@pytest.mark.parametrize(
    "src",
    [
        "[click](javascript:alert(1))",
        "[click](JaVaScRiPt:alert(1))",
        "[click](java&#x09;script:alert(1))",
        "[click](vbscript:msgbox(1))",
        "[click](data:text/html;base64,PHNjcmlwdD4=)",
        "![img](javascript:alert(1))",
        "![img](data:image/svg+xml;base64,PHN2Zz4=)",
    ],
)
def test_dangerous_urls_are_dropped(src):
    html = render(src).lower()
    assert "javascript:" not in html
    assert "vbscript:" not in html
    assert "data:text" not in html
    assert "data:image/svg" not in html


def test_safe_urls_survive():
    html = render("[a](https://example.org) [b](/local) ![c](data:image/png;base64,AAAA)")
    assert 'href="https://example.org"' in html
    assert 'href="/local"' in html
    assert 'src="data:image/png;base64,AAAA"' in html


@pytest.mark.parametrize(
    "url, ok",
    [
        ("", True),
        ("/relative", True),
        ("#frag", True),
        ("mailto:a@b.c", True),
        ("javascript:x", False),
        (" javascript:x", False),
        ("java\nscript:x", False),
        ("file:///etc/passwd", False),
    ],
)
def test_is_safe_url(url, ok):
    assert is_safe_url(url) is ok


def test_tree_processor_drops_event_handlers():
    root = etree.Element("div")
    a = etree.SubElement(root, "a", {"href": "javascript:x", "onclick": "x", "title": "t"})
    img = etree.SubElement(root, "img", {"src": "/ok.png", "ONLOAD": "x"})

    SanitizeTreeprocessor(None).run(root)

    assert a.attrib == {"title": "t"}
    assert img.attrib == {"src": "/ok.png"}


# ───────────────────────── cache / fallback ───────────────────────────
def test_cache_hits_and_content_keying(renderer):
    renderer.render("one")
    renderer.render("one")
    assert renderer.cache.hits == 1

    # new content is a new key, so an edit can never show stale HTML
    assert "two" in renderer.render("two")
    assert renderer.cache.misses == 2


def test_cache_is_bounded(renderer):
    for i in range(10):
        renderer.render(f"text {i}")
    assert len(renderer.cache) == 4


def test_render_falls_back_to_plain_text(renderer, monkeypatch, caplog):
    def boom(text):
        raise RenderError("kaputt")

    monkeypatch.setattr(renderer, "convert", boom)
    html = renderer.render("line <b>one</b>\nline two\n\npara")

    assert html == plain_text_html("line <b>one</b>\nline two\n\npara")
    assert "&lt;b&gt;" in html
    assert "<br>" in html
    assert len(renderer.cache) == 0
    assert "falling back" in caplog.text


def test_convert_wraps_failures(renderer, monkeypatch):
    md = renderer._markdown()
    monkeypatch.setattr(md, "convert", lambda text: 1 / 0)
    with pytest.raises(RenderError):
        renderer.convert("x")


def test_render_from_many_threads(renderer):
    texts = [f"**{i}** item\n\n- a\n- b\n" for i in range(8)]
    expected = {t: MarkdownRenderer().convert(t) for t in texts}
    mismatches = []

    def work():
        for _ in range(20):
            for t in texts:
                if renderer.render(t) != expected[t]:
                    mismatches.append(t)

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert mismatches == []


# ───────────────────────── text helpers ───────────────────────────────
def test_strip_tags():
    assert strip_tags("<p>Hello <b>world</b></p><p>again &amp; again</p>") == (
        "Hello world again & again"
    )


def test_truncate_short_text_untouched():
    assert truncate("<p>short</p>", 50) == "short"


def test_truncate_word_boundary():
    assert truncate("<p>Hello <b>world</b></p>", 8) == "Hello…"


def test_truncate_never_cuts_inside_a_tag():
    html = '<a href="https://example.org/very/long">' + "word " * 50 + "</a>"
    out = truncate(html, 20)
    assert len(out) <= 20
    assert "<" not in out and "href" not in out
    assert out.endswith("…")


def test_truncate_keeps_combining_sequences():
    text = "e\u0301" * 10  # e + combining acute
    out = truncate(text, 4)
    assert out == "e\u0301…"


def test_truncate_keeps_zwj_sequences():
    family = "\U0001F468\u200d\U0001F469\u200d\U0001F467"
    out = truncate("ab" + family + "cd", 5)
    assert "\u200d" not in out
    assert out == "ab…"


def test_truncate_marker_counts_towards_length():
    out = truncate("x" * 100, 10, marker="[...]")
    assert out == "xxxxx[...]"


def test_truncate_rejects_nonpositive():
    with pytest.raises(ValueError):
        truncate("x", 0)


def test_truncate_keeps_less_than_in_plain_text():
    assert truncate("1 < 2 and 3 > 2", 100) == "1 < 2 and 3 > 2"
    assert truncate("a<b " * 30, 25) == "a<b a<b a<b a<b a<b a<b…"


def test_truncate_plain_text_is_never_tag_stripped():
    assert truncate("x<y and z>w", 50, is_html=False) == "x<y and z>w"
    assert truncate("x<y and z>w", 50) == "xw"


def test_truncate_unescapes_html_entities():
    assert truncate("<p>1 &lt; 2</p>", 50) == "1 < 2"


def test_strip_tags_keeps_unterminated_angle_bracket():
    assert strip_tags("a <b") == "a <b"
    assert strip_tags("1 < 2 <em>ok</em><!-- note -->") == "1 < 2 ok"


def test_first_image():
    src = "intro\n\n![evil](javascript:x) ![cat](https://img.test/cat.png)"
    assert first_image(src) == "https://img.test/cat.png"
    assert first_image("no images") is None
