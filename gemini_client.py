#!/usr/bin/env python3
"""gemini_client.py

Thin client for the Gemini ``generateContent`` REST endpoint, used by the
ghost participant. Any failure (HTTP error, timeout, malformed body, empty
text) surfaces as GenerationError.
"""

from __future__ import annotations

import logging

import requests

from constants import DEFAULT_GEMINI_MODEL

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class GenerationError(RuntimeError):
    """The generative-language call failed or produced no text."""


class GeminiClient:
    def __init__(self, api_key: str, model: str = DEFAULT_GEMINI_MODEL, timeout: float = 30.0):
        self.api_key = api_key
        self.model = model or DEFAULT_GEMINI_MODEL
        self.timeout = float(timeout)

    def generate(self, prompt: str) -> str:
        url = f"{GEMINI_API_BASE}/{self.model}:generateContent"
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            resp = requests.post(
                url,
                json=payload,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise GenerationError(f"Gemini request failed: {exc}") from exc
        except ValueError as exc:
            raise GenerationError("Gemini returned a non-JSON body.") from exc

        return _first_text(data)


def _first_text(data) -> str:
    if not isinstance(data, dict):
        raise GenerationError("Gemini response format was invalid.")
    candidates = data.get("candidates", [])
    if not isinstance(candidates, list) or not candidates:
        raise GenerationError("Gemini returned no candidates.")
    first = candidates[0]
    if not isinstance(first, dict):
        raise GenerationError("Gemini response format was invalid.")
    content = first.get("content", {})
    if not isinstance(content, dict):
        raise GenerationError("Gemini response content missing.")
    parts = content.get("parts", [])
    if not isinstance(parts, list) or not parts:
        raise GenerationError("Gemini returned empty content.")
    for part in parts:
        if isinstance(part, dict):
            text = str(part.get("text", "")).strip()
            if text:
                return text
    raise GenerationError("Gemini response did not contain text.")


def create_generator(settings: dict) -> GeminiClient | None:
    """Build a client from settings, or None when no API key is configured."""
    api_key = str(settings.get("gemini_api_key") or "").strip()
    if not api_key:
        logging.info("No gemini_api_key configured; ghost participant disabled.")
        return None
    return GeminiClient(
        api_key=api_key,
        model=str(settings.get("gemini_model") or DEFAULT_GEMINI_MODEL),
        timeout=float(settings.get("gemini_timeout_seconds") or 30),
    )
