"""gunicorn_conf.py

Default Gunicorn config for Confeed + Flask-SocketIO using Eventlet.

Environment variables:
  CONFEED_BIND=0.0.0.0:3333
  CONFEED_WORKERS=1
  CONFEED_GUNICORN_LOGLEVEL=info
  CONFEED_GUNICORN_ACCESSLOG=-
  CONFEED_GUNICORN_ERRORLOG=-
  CONFEED_GUNICORN_TIMEOUT=60
"""

from __future__ import annotations

import os

bind = os.environ.get("CONFEED_BIND", "0.0.0.0:3333")
# Chat coordinator state is per-process; keep one worker unless you know why.
workers = int(os.environ.get("CONFEED_WORKERS", "1"))
worker_class = "eventlet"

# WebSockets keep connections open; avoid overly low timeouts.
timeout = int(os.environ.get("CONFEED_GUNICORN_TIMEOUT", "60"))
keepalive = int(os.environ.get("CONFEED_GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("CONFEED_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("CONFEED_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("CONFEED_GUNICORN_ERRORLOG", "-")

# Important for Socket.IO upgrades through reverse proxies.
forwarded_allow_ips = os.environ.get("CONFEED_FORWARDED_ALLOW_IPS", "*")
