"""@mention parsing.

Handles are matched accent- and case-insensitively. In ``@nick#123`` only
``nick`` is kept; the ``#123`` part is parsed but not used for matching. The
same reduction is applied to session nicknames (``anonimo#123`` -> ``anonimo``),
so every live session sharing a displayed nickname gets the mention.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

# \w covers accented letters (e.g. "joão") in Python 3 str patterns.
_MENTION_RE = re.compile(r"@([\w.#-]+)")


def normalize_handle(value: str) -> str:
    s = unicodedata.normalize("NFD", (value or "").lower())
    return "".join(ch for ch in s if not unicodedata.combining(ch))


def handle_of(nickname: str) -> str:
    """Matching key for a nickname or mention token: ``#suffix`` cut, then normalized."""
    # "@maria." at the end of a sentence
    return normalize_handle((nickname or "").split("#", 1)[0].strip().rstrip(".-"))


def extract_mentions(text: str) -> set[str]:
    handles: set[str] = set()
    for token in _MENTION_RE.findall(text or ""):
        handle = handle_of(token)
        if handle:
            handles.add(handle)
    return handles


def resolve_targets(handles: Iterable[str], live_sessions: Iterable, exclude: str | None = None) -> list[str]:
    """Return identity ids of live sessions whose nickname matches a handle.

    ``live_sessions`` is any iterable of objects exposing ``identity_id`` and
    ``nickname`` (a SessionRegistry snapshot).
    """
    wanted = set(handles)
    if not wanted:
        return []
    out: list[str] = []
    for session in live_sessions:
        if exclude is not None and session.identity_id == exclude:
            continue
        if session.identity_id in out:
            continue
        if handle_of(session.nickname) in wanted:
            out.append(session.identity_id)
    return out
