from __future__ import annotations

from dataclasses import dataclass
from typing import Any


DEFAULT_MAX_RESULTS = 30

# Wire key -> attribute. The web client sends capitalized keys.
_FIELD_ALIASES = {
    "title": ("title", "Title"),
    "description": ("description", "Description"),
    "team": ("team", "Team"),
    "status": ("status", "Status"),
    "tags": ("tags", "Tags"),
    "url": ("url", "URL", "Url"),
}


def _lookup(payload: dict[str, Any], attribute: str) -> Any:
    for key in _FIELD_ALIASES[attribute]:
        if key in payload:
            return payload[key]
    return None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


@dataclass(frozen=True)
class ProjectRecord:
    title: str
    description: str
    team: str | None = None
    status: str | None = None
    tags: str | None = None
    url: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> ProjectRecord:
        if not isinstance(payload, dict):
            raise ValueError("Each project must be a JSON object")
        title = _lookup(payload, "title")
        description = _lookup(payload, "description")
        if not isinstance(title, str):
            raise ValueError("project Title must be a string")
        if not isinstance(description, str):
            raise ValueError("project Description must be a string")
        return cls(
            title=title,
            description=description,
            team=_optional_text(_lookup(payload, "team")),
            status=_optional_text(_lookup(payload, "status")),
            tags=_optional_text(_lookup(payload, "tags")),
            url=_optional_text(_lookup(payload, "url")),
        )

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "Title": self.title,
            "Description": self.description,
            "Team": self.team,
            "Status": self.status,
            "Tags": self.tags,
            "URL": self.url,
        }


def _string_list(value: Any, name: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"filters.{name} must be a list of strings")
    return list(value)


@dataclass(frozen=True)
class SearchFilters:
    max_results: int = DEFAULT_MAX_RESULTS
    teams: list[str] | None = None
    status: list[str] | None = None

    @classmethod
    def from_dict(cls, payload: Any, *, default_max_results: int = DEFAULT_MAX_RESULTS) -> SearchFilters:
        if payload is None:
            return cls(max_results=default_max_results)
        if not isinstance(payload, dict):
            raise ValueError("filters must be a JSON object")
        raw_max = payload.get("max_results", default_max_results)
        if raw_max is None:
            raw_max = default_max_results
        if isinstance(raw_max, bool):
            raise ValueError("filters.max_results must be a non-negative integer")
        try:
            max_results = int(raw_max)
        except (TypeError, ValueError) as exc:
            raise ValueError("filters.max_results must be a non-negative integer") from exc
        if max_results < 0:
            raise ValueError("filters.max_results must be a non-negative integer")
        return cls(
            max_results=max_results,
            teams=_string_list(payload.get("teams"), "teams"),
            status=_string_list(payload.get("status"), "status"),
        )


def parse_projects(payload: Any) -> list[ProjectRecord] | None:
    if payload is None:
        return None
    if not isinstance(payload, list):
        raise ValueError("projects must be a JSON array")
    return [ProjectRecord.from_dict(item) for item in payload]
