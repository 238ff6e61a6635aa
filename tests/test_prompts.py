from __future__ import annotations

import json

from projects import ProjectRecord
from prompts import build_data_analysis_prompt, build_semantic_search_prompt


def test_semantic_search_prompt_embeds_query_counts_and_projects() -> None:
    projects = [
        ProjectRecord(
            title="Green Energy",
            description="Solar power initiative",
            team="Engineering",
            status="Active",
            tags="sustainability",
            url="https://example.com",
        )
    ]
    prompt = build_semantic_search_prompt("sustainability projects", projects, 100)

    assert '**User Query:** "sustainability projects"' in prompt
    assert "1 of 100 total" in prompt
    assert '"Title": "Green Energy"' in prompt
    assert '"search_interpretation"' in prompt
    assert prompt.rstrip().endswith("Return ONLY valid JSON. No markdown, no code blocks, just JSON.")


def test_semantic_search_prompt_serializes_projects_as_pretty_json() -> None:
    projects = [ProjectRecord(title="A", description="d"), ProjectRecord(title="B", description="e", team="Ops")]
    prompt = build_semantic_search_prompt("q", projects, 2)
    start = prompt.index("total):**\n") + len("total):**\n")
    end = prompt.index("\n\nReturn ONLY valid JSON")
    embedded = json.loads(prompt[start:end])
    assert [item["Title"] for item in embedded] == ["A", "B"]
    assert embedded[1]["Team"] == "Ops"
    assert embedded[0]["URL"] is None


def test_semantic_search_prompt_tolerates_braces_in_query() -> None:
    prompt = build_semantic_search_prompt("projects using {json}", [], 0)
    assert "projects using {json}" in prompt
    assert "0 of 0 total" in prompt


def test_data_analysis_prompt_generation() -> None:
    prompt = build_data_analysis_prompt("Analyze this data", {"record_count": 50, "sample_data": []})
    assert prompt.startswith("Analyze this data\n\nDataset Context:\n")
    assert '"record_count": 50' in prompt
