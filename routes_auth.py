"""routes_auth.py

Anonymous sign-in.

There are no passwords: a client either presents the token it was issued
earlier (and gets the same identity back) or receives a brand-new anonymous
identity with an ``anonimo#<n>`` nickname.
"""

import logging

from flask import jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from database import USER_META_FIELDS
from security import AuthenticationError, bearer_token, issue_token, verify_token


def _login_meta(body: dict) -> dict:
    meta = {k: body.get(k) for k in USER_META_FIELDS if isinstance(body.get(k), str) and body.get(k).strip()}
    ip = request.remote_addr or body.get("ip")
    if ip:
        meta["ip"] = str(ip)
    return meta


def register_auth_routes(app, settings, store, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    login_rule = str(settings.get("login_rate_limit") or "30 per minute")

    @app.route("/api/auth/login", methods=["POST"])
    @_limit(login_rule)
    def api_login():
        body = request.get_json(silent=True) or {}
        meta = _login_meta(body if isinstance(body, dict) else {})

        user = None
        token = bearer_token()
        if token:
            try:
                user = store.get_user(verify_token(token))
            except AuthenticationError as e:
                # Stale or foreign token: fall through and hand out a new identity.
                logging.info("Login with unusable token (%s); issuing a new identity", e.code)

        if user is None:
            user = store.create_anonymous_user(meta)
        else:
            user = store.update_user_meta(user["id"], meta) or user

        return jsonify({"token": issue_token(user["id"], settings), "user": user}), 200

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def api_me():
        user = store.get_user(get_jwt_identity())
        if user is None:
            raise AuthenticationError("user_not_found", code="unknown_identity")
        return jsonify({"user": user})
