# gunicorn.conf.py
#   gunicorn -c gunicorn.conf.py "inkpot.blog:create_app()"
import os


def env_int(name, default):
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return int(default)


bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"
# admin sessions live in process memory: one worker, many threads
workers = 1
threads = env_int("INKPOT_THREADS", 8)
timeout = env_int("GUNICORN_TIMEOUT", 60)
loglevel = os.environ.get("GUNICORN_LOGLEVEL", "info")
