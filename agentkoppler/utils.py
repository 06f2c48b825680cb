"""Shared utility helpers for the agentkoppler package."""

from __future__ import annotations

import json
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging.

    The helper never raises and truncates long payloads to keep log lines readable.
    """
    try:
        raw = json.dumps(payload, ensure_ascii=False, default=str)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def format_tool_name(name: str) -> str:
    """Render a snake_case tool name for display, e.g. `ref_search_docs` -> `Ref Search Docs`."""
    return " ".join(word[:1].upper() + word[1:] for word in name.split("_") if word)
