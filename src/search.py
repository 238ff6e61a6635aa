from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from projects import ProjectRecord, SearchFilters
from prompts import build_semantic_search_prompt
from provider_result import ErrorKind, ProviderResult
from usage import TokenUsage
from utils.json_schema import validate_search_payload


LOG = logging.getLogger(__name__)

DEFAULT_INTERPRETATION = "No interpretation provided"


class SearchParseError(ValueError):
    pass


class Dispatcher(Protocol):
    def call(self, provider_tag: Any, prompt_text: str, context: Any = None) -> ProviderResult: ...


@dataclass(frozen=True)
class SearchMatch:
    title: str
    description: str
    relevance_score: int | None = None
    match_reason: str | None = None
    url: str | None = None
    team: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "relevance_score": self.relevance_score,
            "match_reason": self.match_reason,
            "url": self.url,
            "team": self.team,
            "status": self.status,
        }


@dataclass
class SearchResult:
    success: bool
    matches: list[SearchMatch] | None = None
    total_matches: int | None = None
    interpretation: str | None = None
    error: str | None = None
    usage: TokenUsage | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def failed(cls, kind: ErrorKind, error: str, usage: TokenUsage | None = None) -> SearchResult:
        return cls(success=False, error=error, usage=usage, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "matches": [match.to_dict() for match in self.matches] if self.matches is not None else None,
            "total_matches": self.total_matches,
            "search_interpretation": self.interpretation,
            "error": self.error,
            "token_usage": self.usage.to_dict() if self.usage is not None else None,
        }
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind.value
        return payload


def apply_filters(projects: Sequence[ProjectRecord], filters: SearchFilters) -> list[ProjectRecord]:
    # Team matches on substring, status on exact value. Missing values pass.
    filtered: list[ProjectRecord] = []
    for project in projects:
        if filters.teams and project.team is not None:
            if not any(team in project.team for team in filters.teams):
                continue
        if filters.status and project.status is not None:
            if project.status not in filters.status:
                continue
        filtered.append(project)
    return filtered


def select_projects_for_analysis(projects: Sequence[ProjectRecord], max_results: int) -> list[ProjectRecord]:
    return list(projects[: max(0, max_results)])


def _extract_json_span(text: str) -> str:
    cleaned = text.replace("```json", "").replace("```", "")
    # Greedy span: two separate objects in one reply are read as one.
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise SearchParseError("No JSON found in response")
    return cleaned[start : end + 1]


def parse_search_result(text: str) -> tuple[list[SearchMatch], int, str]:
    span = _extract_json_span(text or "")
    try:
        parsed = json.loads(span)
    except json.JSONDecodeError as exc:
        raise SearchParseError(f"Invalid JSON in response: {exc}") from exc

    try:
        matches = [SearchMatch(**item) for item in validate_search_payload(parsed)]
    except ValueError as exc:
        raise SearchParseError(str(exc)) from exc

    total_matches = parsed.get("total_matches")
    if isinstance(total_matches, bool) or not isinstance(total_matches, int) or total_matches < 0:
        total_matches = len(matches)

    interpretation = parsed.get("search_interpretation")
    if not isinstance(interpretation, str):
        interpretation = DEFAULT_INTERPRETATION

    return matches, total_matches, interpretation


class SearchPipeline:
    def __init__(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher

    def search(
        self,
        query: str,
        provider_tag: Any,
        filters: SearchFilters,
        all_projects: Sequence[ProjectRecord] | None,
    ) -> SearchResult:
        LOG.info("Semantic search request: query=%r, provider=%r", query, provider_tag)

        if not isinstance(query, str) or not query.strip():
            return SearchResult.failed(ErrorKind.VALIDATION_FAILURE, "Search query cannot be empty")

        if all_projects is None:
            return SearchResult.failed(
                ErrorKind.VALIDATION_FAILURE,
                "No projects data provided. Client must send projects array.",
            )

        LOG.info("Total projects available: %s", len(all_projects))
        filtered = apply_filters(all_projects, filters)
        selected = select_projects_for_analysis(filtered, filters.max_results)
        LOG.info("Projects selected for analysis: %s of %s", len(selected), len(all_projects))

        prompt = build_semantic_search_prompt(query, selected, len(all_projects))
        LOG.info("Prompt generated: %s characters", len(prompt))

        result = self.dispatcher.call(provider_tag, prompt)
        if not result.success:
            error = result.error
            kind = error.kind if error is not None else ErrorKind.TRANSPORT_FAILURE
            LOG.warning("Semantic search provider call failed (%s): %s", kind.value, error)
            return SearchResult.failed(kind, str(error) if error is not None else "Provider call failed", result.usage)

        try:
            matches, total_matches, interpretation = parse_search_result(result.text or "")
        except SearchParseError as exc:
            LOG.error("Failed to parse AI response: %s", exc)
            return SearchResult.failed(ErrorKind.PARSE_FAILURE, f"Failed to parse AI response: {exc}", result.usage)

        return SearchResult(
            success=True,
            matches=matches,
            total_matches=total_matches,
            interpretation=interpretation,
            usage=result.usage,
        )
