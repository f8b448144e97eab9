import pytest

from chatcore.recall import (
    build_suggested_memory,
    crossed_summary_threshold,
    detect_recall,
    extract_memory_content,
    recall_query,
    should_store_memory,
)


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Do you remember what we decided about the Acme budget?", "we decided about the Acme budget"),
        ("What did we discuss about the rebrand?", "the rebrand"),
        ("Last time we talked about SEO audits", "SEO audits"),
        ("What do you know about Globex?", "Globex"),
    ],
)
def test_detect_recall_extracts_topic(message, expected):
    assert detect_recall(message) == expected


def test_detect_recall_ignores_ordinary_questions():
    assert detect_recall("How many active clients do I have?") is None
    assert recall_query("Show me my tasks!") == "Show me my tasks"


def test_recall_questions_are_never_stored():
    detection = should_store_memory("Do you remember what we decided for the launch?")
    assert detection.should is False


@pytest.mark.parametrize(
    "message,memory_type,importance",
    [
        ("We decided to move the launch to May", "decision", "high"),
        ("Acme prefers short emails", "preference", "high"),
        ("Remind me to send the invoice", "task", "medium"),
        ("Please remember that the fiscal year starts in April", "decision", "high"),
    ],
)
def test_should_store_memory_classifies_type(message, memory_type, importance):
    detection = should_store_memory(message, "Sure.")
    assert detection.should is True
    assert detection.type == memory_type
    assert detection.importance == importance


def test_small_talk_is_not_stored():
    assert should_store_memory("Thanks, that helps!", "You're welcome.").should is False


def test_extract_memory_content_variants():
    assert extract_memory_content("Please remember that the fiscal year starts in April", "") == (
        "the fiscal year starts in April"
    )
    assert extract_memory_content("Acme prefers short emails. Thanks", "") == "Acme prefers short emails"
    long_response = "x" * 250
    fallback = extract_memory_content("We decided to go with blue", long_response)
    assert fallback == "We decided to go with blue → " + "x" * 200 + "..."


def test_build_suggested_memory_uses_detection():
    message = "We decided to move the launch to May"
    suggestion = build_suggested_memory(should_store_memory(message), message, "Noted.", "launch")
    assert suggestion.type == "decision"
    assert suggestion.importance == "high"
    assert suggestion.topic == "launch"
    assert build_suggested_memory(should_store_memory("hi"), "hi", "hello", "") is None


def test_summary_threshold_crossing():
    assert crossed_summary_threshold(9, 11, 10) is True
    assert crossed_summary_threshold(8, 10, 10) is True
    assert crossed_summary_threshold(10, 12, 10) is False
    assert crossed_summary_threshold(5, 7, 0) is False
