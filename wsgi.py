"""wsgi.py

Gunicorn entrypoint for Confeed.

Run (example):
  gunicorn -c gunicorn_conf.py wsgi:app

Notes:
- Presence, typing, unread counters and ghost profiles live in process
  memory, so run a single worker. More workers would each see a slice of
  the connected users.
"""

from __future__ import annotations

import os

# ---- Ensure eventlet monkey_patch happens as early as possible ----
_async = (os.environ.get("CONFEED_SOCKETIO_ASYNC", "auto") or "auto").strip().lower()
if _async in {"auto", "eventlet"}:
    try:
        import eventlet  # type: ignore

        eventlet.monkey_patch()
    except ImportError:
        # If eventlet isn't installed, Confeed falls back to threading.
        pass

from main import apply_env_overrides, configure_logging, load_settings, resolve_config_path
from server_init import create_app

_settings_path = resolve_config_path()
_settings = load_settings(_settings_path)
apply_env_overrides(_settings)
configure_logging(_settings)

# Create the Flask app + Socket.IO integration.
app, socketio = create_app(_settings, limiter=None, settings_file=_settings_path)

# Expose these for tooling / introspection.
app.config["CONFEED_GUNICORN"] = True
app.config["CONFEED_SETTINGS_PATH"] = str(_settings_path)
