"""secrets_policy.py

Central policy for whether the server should persist *secrets* into
confeed_config.json.

In production you typically want secrets in environment variables or a secret
manager, not written back into a config file that may be copied or committed.

Secrets *may* be persisted unless you disable it via env:
  export CONFEED_PERSIST_SECRETS=0
"""

from __future__ import annotations

import os
from typing import Any, Dict


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


def persist_secrets_enabled() -> bool:
    """Whether secret values should be written into confeed_config.json."""
    return _env_bool("CONFEED_PERSIST_SECRETS", True)


# Top-level keys in confeed_config.json that are treated as secrets.
SECRET_SETTING_KEYS = {
    # Flask/JWT secrets
    "secret_key",
    "jwt_secret",
    # DB DSN often contains password
    "database_url",
    # Generative-language API key
    "gemini_api_key",
}


def scrub_secrets_for_persist(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of settings with secret keys removed if persistence is disabled."""
    out = dict(settings)
    if persist_secrets_enabled():
        return out
    for k in list(out.keys()):
        if k in SECRET_SETTING_KEYS:
            out.pop(k, None)
    return out
