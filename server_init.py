#!/usr/bin/env python3
"""
server_init.py
Initialises and runs the Confeed Flask + Socket.IO application.

create_app() builds everything (HTTP routes, socket handlers, the in-memory
chat coordinator and its janitor) without starting a server, so it can be
imported from wsgi.py or from tests with an injected store/generator.
"""

from __future__ import annotations

import json
import os
import logging

# Optional WebSocket support
# - Default: auto (use eventlet if available, otherwise fall back to threading/polling)
# - Override with: CONFEED_SOCKETIO_ASYNC=threading|eventlet
CONFEED_SOCKETIO_ASYNC = os.environ.get("CONFEED_SOCKETIO_ASYNC", "auto").strip().lower()
_EVENTLET_AVAILABLE = False
if CONFEED_SOCKETIO_ASYNC in {"auto", "eventlet"}:
    try:
        import eventlet  # type: ignore

        eventlet.monkey_patch()
        _EVENTLET_AVAILABLE = True
    except ImportError:
        _EVENTLET_AVAILABLE = False
import secrets
import threading
from datetime import timedelta, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO, emit, disconnect

# Socket.IO auth error hardening
from jwt import ExpiredSignatureError
from flask_jwt_extended.exceptions import JWTExtendedException, NoAuthorizationError

from constants import APP_VERSION, sanitize_postgres_dsn, get_db_connection_string, redact_postgres_dsn, postgres_dsn_parts
from secrets_policy import persist_secrets_enabled

from database import PersistenceError, PgChatStore, init_db_pool, init_schema
from gemini_client import create_generator
from janitor import start_janitor
from routes_auth import register_auth_routes
from routes_chat import chat_bp
from security import AuthenticationError

# Marker: build the collaborator from settings.
FROM_SETTINGS = object()


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path] | None) -> None:
    """Log a boot banner that makes 'wrong DB / wrong config' obvious."""
    cfg_path = Path(settings_file) if settings_file else None
    cfg_exists = bool(cfg_path and cfg_path.exists())
    cfg_mtime = None
    if cfg_exists:
        cfg_mtime = datetime.fromtimestamp(cfg_path.stat().st_mtime).isoformat(timespec="seconds")

    dsn = get_db_connection_string(settings)
    parts = postgres_dsn_parts(dsn)

    logging.info("==================== Confeed Boot ====================")
    logging.info("Confeed version: %s", APP_VERSION)
    logging.info("Settings file: %s (exists=%s%s)", str(cfg_path) if cfg_path else "<none>", cfg_exists,
                 f", mtime={cfg_mtime}" if cfg_mtime else "")
    logging.info(
        "Configured DB: host=%s port=%s db=%s user=%s",
        parts.get("host"), parts.get("port"), parts.get("db"), parts.get("user"),
    )
    logging.info("Configured DSN: %s", redact_postgres_dsn(dsn))
    logging.info("Ghost participant: %s", "enabled" if settings.get("ai_enabled", True) else "disabled")
    logging.info("=======================================================")


def _normalize_cors_origins(val):
    if val is None:
        return None
    if isinstance(val, str):
        raw = val.strip()
        if not raw:
            return None
        # Support comma-separated strings
        if "," in raw:
            items = [x.strip() for x in raw.split(",") if x.strip()]
            return items or None
        return raw
    if isinstance(val, (list, tuple, set)):
        items = [str(x).strip() for x in val if str(x).strip()]
        return items or None
    return None


def create_app(
    settings: Dict[str, Any],
    store: Any = FROM_SETTINGS,
    generator: Any = FROM_SETTINGS,
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application.

    This function does **not** start a server. It is safe to import from a
    Gunicorn `wsgi.py` module.

    ``store`` and ``generator`` default to the Postgres store and the Gemini
    client built from ``settings``; pass ``generator=None`` to run without the
    ghost participant.
    """

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file

    # ───── Flask App Core ─────
    app = Flask(__name__)
    app.config["CONFEED_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    # Expose the live runtime settings dict to blueprints that need it.
    app.config["CONFEED_SETTINGS"] = settings

    app.secret_key = _ensure_secret_key(settings, settings_file)

    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_jwt_secret(settings, settings_file),
        # Mobile clients send "Authorization: Bearer <token>" and pass the
        # same token in the Socket.IO handshake auth payload.
        JWT_TOKEN_LOCATION=["headers"],
        JWT_HEADER_NAME="Authorization",
        JWT_HEADER_TYPE="Bearer",
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=int(settings.get("access_token_days", 30))),
    )

    JWTManager(app)

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------
    # Token auth travels in headers (no cookies), so "*" is acceptable here.
    cors_origins = _normalize_cors_origins(settings.get("cors_allowed_origins"))
    if cors_origins is not None:
        CORS(app, resources={r"/api/*": {"origins": cors_origins}})

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
        )
    limiter.init_app(app)

    # ------------------------------------------------------------------
    # JSON error bodies for the API
    # ------------------------------------------------------------------
    @app.errorhandler(AuthenticationError)
    def _auth_error(e: AuthenticationError):
        return jsonify(e.to_dict()), 401

    @app.errorhandler(PersistenceError)
    def _persistence_error(e: PersistenceError):
        logging.error("Request %s %s failed on the database: %s", request.method, request.path, e)
        return jsonify({"message": "internal_error"}), 500

    # Boot banner (helps catch wrong config / wrong DB early)
    _log_startup_banner(settings, settings_file)

    # ───── Persistence + generation collaborators ─────
    if store is FROM_SETTINGS:
        # Defensive DSN sanitisation (common: pasted placeholder angle brackets)
        if settings.get("database_url"):
            settings["database_url"] = str(sanitize_postgres_dsn(str(settings["database_url"])))
        init_db_pool(
            minconn=int(settings.get("db_pool_min", 1)),
            maxconn=int(settings.get("db_pool_max", 10)),
            dsn=str(settings.get("database_url")) if settings.get("database_url") else None,
        )
        init_schema()
        store = PgChatStore()

    if generator is FROM_SETTINGS:
        generator = create_generator(settings) if settings.get("ai_enabled", True) else None

    # ───── SocketIO Setup ─────
    # NOTE: long-polling generates a *ton* of HTTP requests (and log lines). If
    # eventlet is available, we prefer it to enable WebSockets and dramatically
    # cut request volume.
    async_mode = "threading"
    if CONFEED_SOCKETIO_ASYNC == "eventlet" and not _EVENTLET_AVAILABLE:
        logging.warning("[socketio] CONFEED_SOCKETIO_ASYNC=eventlet but eventlet is not installed; falling back to threading")
    if (CONFEED_SOCKETIO_ASYNC in {"auto", "eventlet"}) and _EVENTLET_AVAILABLE:
        async_mode = "eventlet"

    app.config["CONFEED_SOCKETIO_ASYNC_MODE"] = async_mode

    socketio = SocketIO(
        app,
        async_mode=async_mode,
        cors_allowed_origins=cors_origins,
        logger=False,
        engineio_logger=False,
        ping_interval=20,
        ping_timeout=15,
    )

    # Expose the SocketIO instance to blueprints that need to emit events from
    # normal HTTP routes.
    app.config["CONFEED_SOCKETIO"] = socketio

    # ───── Global Socket.IO Error Handler ─────
    # Token problems raised inside event handlers become a client-visible
    # signal plus a disconnect so the client can re-run its login.
    @socketio.on_error_default  # applies to all namespaces
    def _socketio_default_error_handler(e):
        sid = getattr(request, "sid", None)

        if isinstance(e, (ExpiredSignatureError, NoAuthorizationError, JWTExtendedException, AuthenticationError)):
            reason = "access_token_expired" if isinstance(e, ExpiredSignatureError) else "auth_failed"
            if sid:
                emit("auth_error", {"reason": reason}, to=sid)
                disconnect(sid=sid)
            return

        # Everything else: log it, but avoid crashing the server thread.
        logging.exception("Socket.IO handler error: %s", e)
        return {"success": False, "error": "internal_error"}

    # ───── Routes + realtime coordinator ─────
    from socket_handlers import register_socketio_handlers
    realtime = register_socketio_handlers(socketio, settings, store, generator)
    app.config["CONFEED_REALTIME"] = realtime
    app.config["CONFEED_STORE"] = store

    register_auth_routes(app, settings, store, limiter=limiter)
    app.register_blueprint(chat_bp)

    # Background janitor: evicts idle ghost profiles. State is per-process,
    # so every process runs its own sweeper.
    if settings.get("janitor_enabled", True):
        stop_event = threading.Event()
        app.config["CONFEED_JANITOR_STOP"] = stop_event
        start_janitor(realtime.pool, settings, stop_event, spawn=socketio.start_background_task)

    return app, socketio


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> None:
    """Bootstrap the Flask-SocketIO app, attach blueprints & handlers, then run it."""

    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    # ───── Run Server (dev / single-process) ─────
    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 3333)
    debug = bool(settings.get("debug") or False)

    logging.info("Starting Confeed on http://%s:%s (debug=%s, async=%s)",
                 host, port, debug, app.config.get("CONFEED_SOCKETIO_ASYNC_MODE"))

    # Reduce console spam from long-polling by filtering Werkzeug access logs for /socket.io.
    # (This does not disable Socket.IO itself; it only suppresses noisy request log lines.)
    class _ConfeedSocketIOAccessFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:  # type: ignore
            return "/socket.io/" not in record.getMessage()

    logging.getLogger("werkzeug").addFilter(_ConfeedSocketIOAccessFilter())

    try:
        socketio.run(
            app,
            host=host,
            port=port,
            debug=debug,
            use_reloader=False,
            log_output=debug,
            allow_unsafe_werkzeug=True,
        )
    finally:
        realtime = app.config.get("CONFEED_REALTIME")
        if realtime is not None:
            realtime.pool.shutdown()
        stop_event = app.config.get("CONFEED_JANITOR_STOP")
        if stop_event is not None:
            stop_event.set()


# ───── Helpers ─────
def _ensure_secret_key(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    key = settings.get("secret_key") or os.getenv("SECRET_KEY")
    if key:
        return key

    key = secrets.token_urlsafe(64)
    settings["secret_key"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("secret_key generated and saved to settings.")
    else:
        logging.warning("Generated a one-off secret_key (NOT saved).")
    return key


def _ensure_jwt_secret(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    # Prefer explicit config, then env var. Only persist if we *generated* it
    # and secret persistence is enabled.
    key = settings.get("jwt_secret")
    if key:
        return str(key)

    env_key = os.getenv("JWT_SECRET_KEY")
    if env_key and str(env_key).strip():
        return str(env_key).strip()

    key = secrets.token_hex(32)
    settings["jwt_secret"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("jwt_secret generated and saved to settings.")
    else:
        logging.warning("Generated a one-off jwt_secret (NOT saved). Issued tokens stop working on restart.")
    return key


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    # If persistence is disabled, never write secrets into the settings file.
    if not persist_secrets_enabled():
        return False
    if not settings_file:
        return False
    if settings_file.suffix.lower() != ".json":
        logging.warning("Unsupported settings file format: %s", settings_file)
        return False

    # Only write if the settings file is valid JSON or does not exist.
    existing: dict | None = None
    if settings_file.exists():
        try:
            with settings_file.open("r", encoding="utf-8") as fp:
                existing = json.load(fp)
        except (OSError, ValueError):
            existing = None

    try:
        # If the settings file exists but is invalid JSON, back it up and write a fresh JSON file.
        if existing is None and settings_file.exists():
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            bad_path = settings_file.with_suffix(settings_file.suffix + f".bad-{ts}")
            settings_file.rename(bad_path)
            logging.warning("Backed up invalid settings file to: %s", bad_path)
            existing = {}

        merged = dict(existing or {})
        merged.update(settings)

        with settings_file.open("w", encoding="utf-8") as fp:
            json.dump(merged, fp, indent=2)
    except OSError as exc:
        logging.error("Could not persist generated secret to %s: %s", settings_file, exc)
        return False

    return True
