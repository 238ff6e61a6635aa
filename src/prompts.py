from __future__ import annotations

import json
from typing import Any, Sequence

from projects import ProjectRecord


_SEARCH_TEMPLATE = """You are a semantic search engine for project feeds. Analyze the user's query and return ONLY the matching projects.

**User Query:** "{query}"

**Your Task:**
1. Understand the semantic meaning and intent of the user's query
2. Find ALL projects that match the query (not just exact keyword matches)
3. Consider synonyms, related concepts, and context
4. Return results in JSON format

**Return Format (JSON ONLY, no other text):**
{{
  "matches": [
    {{
      "title": "Project Title",
      "description": "Project Description",
      "relevance_score": 95,
      "match_reason": "Brief explanation why this matches",
      "url": "project url",
      "team": "team name",
      "status": "status"
    }}
  ],
  "total_matches": 5,
  "search_interpretation": "What you understood from the query"
}}

**Projects Database ({analyzed} of {total} total):**
{projects_json}

Return ONLY valid JSON. No markdown, no code blocks, just JSON."""


def build_semantic_search_prompt(query: str, projects: Sequence[ProjectRecord], total_projects: int) -> str:
    projects_json = json.dumps([project.to_prompt_dict() for project in projects], indent=2, ensure_ascii=False)
    return _SEARCH_TEMPLATE.format(
        query=query,
        analyzed=len(projects),
        total=total_projects,
        projects_json=projects_json,
    )


def build_data_analysis_prompt(custom_prompt: str, dataset_info: Any) -> str:
    try:
        context = json.dumps(dataset_info, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        context = "{}"
    return f"{custom_prompt}\n\nDataset Context:\n{context}"
