#!/usr/bin/env python3
"""security.py

Token helpers shared by the HTTP routes and the Socket.IO handshake.

Tokens are flask-jwt-extended access tokens whose identity is the user id.
Everything here needs an application context (create_app() provides one for
requests and socket handlers alike).
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import request
from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError


class AuthenticationError(Exception):
    """Missing, invalid or expired token, or a token for an unknown identity."""

    def __init__(self, message: str = "Authentication error", code: str = "unauthorized"):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


def issue_token(user_id: str, settings: dict | None = None) -> str:
    days = int((settings or {}).get("access_token_days", 30))
    return create_access_token(identity=str(user_id), expires_delta=timedelta(days=days))


def verify_token(token: str | None) -> str:
    """Return the identity id carried by ``token`` or raise AuthenticationError."""
    if not token or not isinstance(token, str):
        raise AuthenticationError("Authentication error", code="missing_token")
    try:
        decoded = decode_token(token)
    except (PyJWTError, JWTExtendedException) as exc:
        logging.info("Rejected token: %s", exc)
        raise AuthenticationError("Authentication error", code="invalid_token") from exc

    identity = decoded.get("sub")
    if not identity:
        raise AuthenticationError("Authentication error", code="invalid_token")
    return str(identity)


def bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return None


def authenticate(token: str | None, store) -> dict:
    """verifyToken + lookupIdentity in one step. Returns the stored user."""
    user_id = verify_token(token)
    user = store.get_user(user_id)
    if user is None:
        logging.info("Token for unknown identity %s rejected", user_id)
        raise AuthenticationError("Authentication error", code="unknown_identity")
    return user
