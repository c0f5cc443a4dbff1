#!/usr/bin/env python3
"""main.py

Confeed server entrypoint.

This project treats ``confeed_config.json`` as a *plaintext* JSON settings
file. If you want to keep secrets out of the file, prefer environment variables
(``DATABASE_URL``, ``SECRET_KEY``, ``JWT_SECRET_KEY``, ``GEMINI_API_KEY``) and
set ``CONFEED_PERSIST_SECRETS=0``.
"""

from __future__ import annotations

import argparse
from datetime import datetime
import json
import logging
import os
import sys
from pathlib import Path

from config import get_default_settings
from constants import CONFIG_FILE, sanitize_postgres_dsn
from secrets_policy import scrub_secrets_for_persist


def configure_logging(settings: dict) -> None:
    """Configure file logging plus a stdout mirror."""
    log_level_str = str(settings.get("log_level", "INFO")).upper()
    log_format = settings.get(
        "log_format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    log_file_path = settings.get("log_file_path", "logs/server.log")

    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(level=log_level, format=log_format, filename=log_file_path, filemode="a")
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(logging.Formatter(log_format))
    logging.getLogger().addHandler(stream)
    logging.info("Logging configured (level=%s)", log_level_str)


def load_settings(path: Path) -> dict:
    """Load settings from JSON, layered over the defaults. Returns defaults if missing."""
    settings = get_default_settings()
    if not path.exists():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            loaded = json.load(fp)
    except (OSError, ValueError) as exc:
        logging.warning("Could not parse %s as JSON: %s", path, exc)
        # Back the corrupt file up so generated secrets can be persisted into
        # a fresh JSON file.
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            logging.warning("Backed up invalid settings file to: %s", bad_path)
        except OSError as e2:
            logging.warning("Could not back up invalid settings file: %s", e2)
        logging.warning("Falling back to default settings.")
        return settings

    if not isinstance(loaded, dict):
        logging.warning("%s does not hold a JSON object; using defaults.", path)
        return settings
    settings.update(loaded)
    return settings


def save_settings(path: Path, settings: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # If CONFEED_PERSIST_SECRETS=0, do not write secrets (DB DSN, API keys)
    # into the settings file. Keep them in env/.env instead.
    to_save = scrub_secrets_for_persist(settings)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(to_save, fp, indent=2)


def apply_env_overrides(settings: dict) -> None:
    """Apply env overrides for secrets and runtime deployment."""

    def _bool_env(*names: str) -> bool | None:
        for n in names:
            v = os.getenv(n)
            if v is None:
                continue
            v = v.strip().lower()
            if v in ("1", "true", "yes", "y", "on"):
                return True
            if v in ("0", "false", "no", "n", "off"):
                return False
        return None

    def _str_env(*names: str) -> str | None:
        for n in names:
            v = os.getenv(n)
            if v is not None and v.strip() != "":
                return v.strip()
        return None

    def _int_env(*names: str) -> int | None:
        v = _str_env(*names)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    # Prefer DB env vars for safety.
    db = _str_env("DB_CONNECTION_STRING", "DATABASE_URL")
    if db:
        settings["database_url"] = str(sanitize_postgres_dsn(db))

    secret = _str_env("SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("JWT_SECRET_KEY", "CONFEED_JWT_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    # Ghost participant (Gemini)
    gemini_key = _str_env("GEMINI_API_KEY", "CONFEED_GEMINI_API_KEY")
    if gemini_key:
        settings["gemini_api_key"] = gemini_key

    gemini_model = _str_env("CONFEED_GEMINI_MODEL", "GEMINI_MODEL")
    if gemini_model:
        settings["gemini_model"] = gemini_model

    ai_enabled = _bool_env("CONFEED_AI_ENABLED")
    if ai_enabled is not None:
        settings["ai_enabled"] = ai_enabled

    # Listener + logging
    host = _str_env("CONFEED_HOST")
    if host:
        settings["host"] = host

    port = _int_env("CONFEED_PORT", "PORT")
    if port:
        settings["port"] = port

    log_level = _str_env("CONFEED_LOG_LEVEL")
    if log_level:
        settings["log_level"] = log_level.upper()


def resolve_config_path(cli_value: str | None = None) -> Path:
    return Path(cli_value or os.environ.get("CONFEED_CONFIG") or CONFIG_FILE)


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Confeed chat server")
    p.add_argument("--config", default=None, help="path to server config JSON")
    p.add_argument("--write-config", action="store_true", help="write the merged settings back to --config and exit")
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    settings_path = resolve_config_path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    if args.write_config:
        save_settings(settings_path, settings)
        print(f"Saved settings to {settings_path}")
        return

    configure_logging(settings)

    if not settings.get("gemini_api_key"):
        logging.warning("gemini_api_key is empty; the ghost participant will stay silent.")

    from server_init import run_web_server
    run_web_server(settings, limiter=None, settings_file=settings_path)


if __name__ == "__main__":
    main()
