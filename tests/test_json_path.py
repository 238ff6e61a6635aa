from __future__ import annotations

from utils.json_path import JsonPath


def test_descends_nested_path() -> None:
    doc = {"candidates": [{"content": {"parts": [{"text": "hello"}]}}]}
    cursor = JsonPath(doc).key("candidates").index(0).key("content").key("parts").index(0).key("text")
    assert cursor.found
    assert cursor.text() == "hello"
    assert cursor.path == "candidates[0].content.parts[0].text"


def test_short_circuits_at_first_missing_link() -> None:
    doc = {"candidates": []}
    cursor = JsonPath(doc).key("candidates").index(0).key("content").key("parts")
    assert not cursor.found
    assert cursor.missing_at == "candidates[0]"
    assert cursor.text() is None
    assert cursor.value("fallback") == "fallback"
    assert cursor.root is doc


def test_type_mismatch_counts_as_missing() -> None:
    cursor = JsonPath({"candidates": {"0": "x"}}).key("candidates").index(0)
    assert cursor.missing_at == "candidates[0]"
    assert JsonPath({"a": 5}).key("a").key("b").missing_at == "a.b"


def test_text_and_mapping_check_types() -> None:
    assert JsonPath({"a": 1}).key("a").text() is None
    assert JsonPath({"a": {"b": 1}}).key("a").mapping() == {"b": 1}
    assert JsonPath({"a": [1]}).key("a").mapping() is None
