#!/usr/bin/env python3
"""routes_chat.py

Chat-related HTTP endpoints.

Notes:
  - Live traffic goes over Socket.IO (realtime/chat.py); these endpoints
    serve history paging, a presence snapshot and the app health check.
"""

from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import jwt_required

from constants import APP_VERSION, MINIMUM_CLIENT_VERSION

chat_bp = Blueprint("chat", __name__)

MAX_HISTORY_PAGE = 100


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


@chat_bp.route("/api/chat/history", methods=["GET"])
@jwt_required()
def api_chat_history():
    """Page through the global room, newest page first, each page oldest-first."""
    settings = current_app.config.get("CONFEED_SETTINGS") or {}
    cap = min(int(settings.get("chat_history_limit", MAX_HISTORY_PAGE)), MAX_HISTORY_PAGE)

    limit = max(1, min(_int_arg("limit", cap), cap))
    offset = max(0, _int_arg("offset", 0))

    store = current_app.config["CONFEED_STORE"]
    messages = store.get_history(limit, offset)
    return jsonify({"messages": messages, "hasMore": len(messages) == limit})


@chat_bp.route("/api/chat/presence", methods=["GET"])
@jwt_required()
def api_chat_presence():
    realtime = current_app.config["CONFEED_REALTIME"]
    return jsonify(realtime.hub.snapshot_presence())


@chat_bp.route("/api/health", methods=["GET"])
def api_health():
    settings = current_app.config.get("CONFEED_SETTINGS") or {}
    minimum = str(settings.get("minimum_client_version") or MINIMUM_CLIENT_VERSION)
    return jsonify(
        {
            "status": "ok",
            "date": datetime.now(timezone.utc).isoformat(),
            "systemInfo": {
                "currentVersion": APP_VERSION,
                "minimumVersion": minimum,
                "forceUpdate": bool(settings.get("force_update", False)),
                "updateMessage": str(settings.get("update_message") or ""),
            },
        }
    )
