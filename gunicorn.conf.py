"""
Gunicorn settings for the deployed service.

Start with ``gunicorn app.wsgi:app`` from the repository root; gunicorn picks
this file up automatically. Migrations run once in the master process before
any worker is forked.
"""

import os
import sys


def _port() -> int:
    raw = os.environ.get("PORT", "").strip() or "8080"
    try:
        port = int(raw)
    except ValueError:
        sys.exit(f"Invalid PORT value {raw!r}; expected an integer 1-65535.")
    if not 1 <= port <= 65535:
        sys.exit(f"PORT {port} is out of range.")
    return port


bind = f"0.0.0.0:{_port()}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
# auto-save timers run on threads inside each worker
threads = 4
timeout = 60
preload_app = True
accesslog = "-"
errorlog = "-"


def on_starting(server):
    from scripts.release import run_release

    run_release()
