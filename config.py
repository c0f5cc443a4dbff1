#!/usr/bin/env python3
"""config.py

Default runtime settings for the Confeed chat server.

The server reads a plaintext JSON settings file (see main.load_settings) and
falls back to these defaults for any missing key. Keep secrets out of JSON when
possible; prefer env vars. server_init.py generates secret_key + jwt_secret if
they are missing.
"""

from __future__ import annotations

import os
from typing import Any, Dict

from constants import DEFAULT_DB_CONNECTION_STRING, DEFAULT_GEMINI_MODEL, sanitize_postgres_dsn


def get_default_settings() -> Dict[str, Any]:
    """Return a compact set of defaults."""

    dsn = sanitize_postgres_dsn(
        os.getenv("DATABASE_URL")
        or os.getenv("DB_CONNECTION_STRING")
        or DEFAULT_DB_CONNECTION_STRING
    )

    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "Confeed",
        "host": "0.0.0.0",
        "port": 3333,
        "debug": False,
        "cors_allowed_origins": "*",

        # Secrets (server_init.py will generate/persist if missing)
        "secret_key": "",
        "jwt_secret": "",

        # ── Database ─────────────────────────────────────────────────────
        "database_url": dsn,
        "db_pool_min": 1,
        "db_pool_max": 10,

        # ── Auth ─────────────────────────────────────────────────────────
        "access_token_days": 30,
        "login_rate_limit": "30 per minute",
        "rate_limit_storage_uri": "memory://",

        # ── Logging ──────────────────────────────────────────────────────
        "log_level": "INFO",
        "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "log_file_path": "logs/server.log",

        # ── Chat ─────────────────────────────────────────────────────────
        "max_message_length": 2000,
        "chat_history_limit": 100,
        "typing_timeout_seconds": 3,

        # ── Client update policy (reported by /api/health) ───────────────
        "minimum_client_version": "1.0.0",
        "force_update": False,
        "update_message": "",

        # ── Ghost participant (Gemini) ───────────────────────────────────
        "ai_enabled": True,
        "gemini_api_key": "",
        "gemini_model": DEFAULT_GEMINI_MODEL,
        "gemini_timeout_seconds": 30,
        "ai_reuse_cooldown_seconds": 10,
        "ai_idle_eviction_seconds": 1800,
        "ai_sweep_interval_seconds": 300,
        "ai_response_cooldown_seconds": 15,
        "ai_reply_delay_min_seconds": 2,
        "ai_reply_delay_max_seconds": 4,
        "ai_context_window": 8,
        "ai_memory_size": 10,
        "ai_max_response_chars": 500,

        # ── Background janitor ───────────────────────────────────────────
        "janitor_enabled": True,
    }
