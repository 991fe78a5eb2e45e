"""
Inline Jinja templates.

Views only hand over structured context (titles, sanitized HTML bodies,
dates, tag lists, ``logged_in``); all markup lives here.
"""


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{% if title %}{{ title }} · {% endif %}{{ blog_name }}</title>
{% if description %}<meta name="description" content="{{ description }}">{% endif %}
{% if image %}<meta property="og:image" content="{{ image }}">{% endif %}
<link rel="alternate" type="application/atom+xml" href="{{ url_for('blog.feed') }}"
      title="{{ blog_name }}">
<style>
body{font:1.05rem/1.6 -apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;
max-width:42em;margin:auto;padding:1em;color:#222}
a{color:#0b5394}nav a{margin-right:1em}.meta{color:#777;font-size:.85em}
.tag{display:inline-block;padding:0 .5em;margin-right:.3em;border-radius:1em;background:#eee}
pre{overflow-x:auto;padding:.8em}textarea,input[type=text],input[type=password]{width:100%}
textarea{min-height:20em}.error{color:#b00}
</style>
</head>
<body>
<header>
  <h1 style="margin-bottom:.2em"><a href="{{ url_for('blog.index') }}">{{ blog_name }}</a></h1>
  <nav>
    <a href="{{ url_for('blog.archive') }}">Articles</a>
    <a href="{{ url_for('blog.tag_index') }}">Tags</a>
    <a href="{{ url_for('blog.feed') }}">Feed</a>
    {% for t in page_titles() %}<a href="{{ url_for('blog.custom_page', title=t) }}">{{ t }}</a>
    {% endfor %}
    {% if logged_in %}<a href="{{ url_for('blog.admin') }}">Admin</a>{% endif %}
  </nav>
</header>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer class="meta" style="margin-top:3em;border-top:1px solid #ddd;padding-top:1em">
  {{ blog_name }} · inkpot v{{ version }}
  {% if logged_in %}
  <form method="post" action="{{ url_for('blog.logout') }}" style="display:inline">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit">Log out</button>
  </form>
  {% endif %}
</footer>
</body>
</html>
"""

_TAG_LIST = """{% for t in tags %}<a class="tag" href="{{ url_for('blog.tag', name=t) }}">{{ t }}</a>{% endfor %}"""

TEMPL_INDEX = wrap("""
{% for a in articles %}
<article>
  <h2><a href="{{ url_for('blog.article', article_id=a.id) }}">{{ a.title }}</a></h2>
  <div class="meta">{{ a.created_at | date }}
  {% with tags = a.tags %}""" + _TAG_LIST + """{% endwith %}</div>
  <p>{{ a.summary }}</p>
</article>
{% else %}
<p>Nothing here yet.</p>
{% endfor %}
<nav class="meta">
  {% if page_num > 1 %}<a href="{{ url_for('blog.page', num=page_num - 1) }}">&larr; newer</a>{% endif %}
  {% if page_num < max_page %}<a href="{{ url_for('blog.page', num=page_num + 1) }}">older &rarr;</a>{% endif %}
</nav>
""")

TEMPL_ARTICLE = wrap("""
<article>
  <h2>{{ title }}</h2>
  <div class="meta">{{ created_at | date }}
  {% if updated_at and updated_at != created_at %}(updated {{ updated_at | date }}){% endif %}
  """ + _TAG_LIST + """
  {% if logged_in %}
    · <a href="{{ url_for('blog.edit_article', article_id=article_id) }}">edit</a>
  {% endif %}
  </div>
  <div class="e-content">{{ body_html }}</div>
</article>
""")

TEMPL_BY_YEAR = wrap("""
{% if heading %}<h2>{{ heading }}</h2>{% endif %}
{% for year, items in years %}
<h3>{{ year }}</h3>
<ul>
  {% for a in items %}
  <li><a href="{{ url_for('blog.article', article_id=a.id) }}">{{ a.title }}</a>
      <span class="meta">{{ a.created_at | date }}</span></li>
  {% endfor %}
</ul>
{% else %}
<p>No articles.</p>
{% endfor %}
""")

TEMPL_TAGS = wrap("""
<h2>Tags</h2>
<ul>
{% for t in tag_counts %}
  <li><a href="{{ url_for('blog.tag', name=t.name) }}">{{ t.name }}</a>
      <span class="meta">{{ t.count }}</span></li>
{% else %}
  <li>No tags yet.</li>
{% endfor %}
</ul>
""")

TEMPL_LOGIN = wrap("""
<h2>Admin login</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="{{ url_for('blog.login') }}">
  <input type="hidden" name="next" value="{{ next or '' }}">
  <label for="username">Username</label>
  <input id="username" name="username" type="text" autocomplete="username">
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password">
  <button type="submit">Log in</button>
</form>
""")

TEMPL_ADMIN = wrap("""
<h2>Admin</h2>
<p><a href="{{ url_for('blog.create_article') }}">New article</a></p>
<table>
{% for a in articles %}
  <tr>
    <td><a href="{{ url_for('blog.article', article_id=a.id) }}">{{ a.title }}</a></td>
    <td class="meta">{{ a.created_at | date }}</td>
    <td><a href="{{ url_for('blog.edit_article', article_id=a.id) }}">edit</a></td>
    <td>
      <form method="post" action="{{ url_for('blog.delete_article', article_id=a.id) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit">delete</button>
      </form>
    </td>
  </tr>
{% endfor %}
</table>
<h3>Pages</h3>
<p><a href="{{ url_for('blog.create_page') }}">New page</a></p>
<table>
{% for p in pages %}
  <tr>
    <td><a href="{{ url_for('blog.custom_page', title=p.title) }}">{{ p.title }}</a></td>
    <td class="meta">{{ p.updated_at | date }}</td>
    <td><a href="{{ url_for('blog.edit_page', page_id=p.id) }}">edit</a></td>
    <td>
      <form method="post" action="{{ url_for('blog.delete_page', page_id=p.id) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit">delete</button>
      </form>
    </td>
  </tr>
{% endfor %}
</table>
""")

TEMPL_PAGE = wrap("""
<article>
  <h2>{{ title }}</h2>
  {% if logged_in %}
  <div class="meta"><a href="{{ url_for('blog.edit_page', page_id=page_id) }}">edit</a></div>
  {% endif %}
  <div class="e-content">{{ body_html }}</div>
</article>
""")

TEMPL_PAGE_EDITOR = wrap("""
<h2>{{ 'Edit page' if page_id else 'New page' }}</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post"
      action="{{ url_for('blog.edit_page', page_id=page_id) if page_id
                 else url_for('blog.create_page') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="title">Title (also the address, no “/”)</label>
  <input id="title" name="title" type="text" value="{{ form_title }}">
  <label for="content">Content (Markdown)</label>
  <textarea id="content" name="content">{{ form_content }}</textarea>
  <button type="submit">Save</button>
</form>
""")

TEMPL_EDITOR = wrap("""
<h2>{{ 'Edit article' if article_id else 'New article' }}</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post"
      action="{{ url_for('blog.edit_article', article_id=article_id) if article_id
                 else url_for('blog.create_article') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="title">Title</label>
  <input id="title" name="title" type="text" value="{{ form_title }}">
  <label for="tags">Tags (comma separated)</label>
  <input id="tags" name="tags" type="text" value="{{ form_tags }}">
  <label for="content">Content (Markdown)</label>
  <textarea id="content" name="content">{{ form_content }}</textarea>
  <button type="submit">Save</button>
</form>
""")

TEMPL_ERROR = wrap("""
<h2>{{ heading }}</h2>
<p>{{ message }}</p>
<p><a href="{{ url_for('blog.index') }}">Back to the front page</a></p>
""")

TEMPL_FEED = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>{{ blog_name }}</title>
  <link href="{{ blog_url }}"/>
  <link rel="self" href="{{ feed_url }}"/>
  <id>{{ blog_url }}</id>
  <updated>{{ updated | iso }}</updated>
  {% for e in entries %}
  <entry>
    <title>{{ e.title }}</title>
    <link href="{{ e.url }}"/>
    <id>{{ e.url }}</id>
    <published>{{ e.created_at | iso }}</published>
    <updated>{{ e.updated_at | iso }}</updated>
    {% for t in e.tags %}<category term="{{ t }}"/>{% endfor %}
    <content type="html">{{ e.body_html }}</content>
  </entry>
  {% endfor %}
</feed>
"""
