from __future__ import annotations

from typing import Any


_OPTIONAL_TEXT_FIELDS = ("match_reason", "url", "team", "status")


def normalize_search_match(item: object) -> dict[str, Any] | None:
    """Return the match fields of one AI-reported item, or None to drop it."""
    if not isinstance(item, dict):
        return None

    title = item.get("title")
    description = item.get("description")
    if not isinstance(title, str) or not isinstance(description, str):
        return None

    score = item.get("relevance_score")
    if isinstance(score, bool) or not isinstance(score, int) or score < 0:
        score = None

    normalized: dict[str, Any] = {
        "title": title,
        "description": description,
        "relevance_score": score,
    }
    for key in _OPTIONAL_TEXT_FIELDS:
        value = item.get(key)
        normalized[key] = value if isinstance(value, str) else None
    return normalized


def validate_search_payload(payload: object) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        raise ValueError("No 'matches' array in response")

    matches = payload.get("matches")
    if not isinstance(matches, list):
        raise ValueError("No 'matches' array in response")

    normalized: list[dict[str, Any]] = []
    for item in matches:
        match = normalize_search_match(item)
        if match is not None:
            normalized.append(match)
    return normalized
