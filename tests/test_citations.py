from chatcore.citations import (
    CitationCollector,
    SuggestionsFilter,
    insert_inline_citations,
    split_suggestions,
    strip_decimal_markers,
    strip_decimal_markers_with_supports,
)
from chatcore.schemas import Citation, GroundingChunk, GroundingMetadata, GroundingSupport


def web(index: int, url: str) -> Citation:
    return Citation(index=index, title=url, url=url, source="web")


def support(end: int, *chunks: int) -> GroundingSupport:
    return GroundingSupport(end_index=end, chunk_indices=list(chunks))


def test_marker_appended_with_space_at_end_of_text():
    text = "Paris is the capital of France."
    out = insert_inline_citations(text, [support(len(text), 0)], [web(1, "https://a.example")])
    assert out == "Paris is the capital of France. [1]"


def test_marker_moves_past_end_of_word():
    text = "Hello world again"
    out = insert_inline_citations(text, [support(3, 0)], [web(1, "https://a.example")])
    assert out == "Hello[1] world again"


def test_multiple_chunks_give_sorted_unique_markers():
    text = "Rates rose. Markets fell."
    citations = [web(2, "https://b.example"), web(1, "https://a.example"), web(2, "https://b.example")]
    out = insert_inline_citations(text, [support(11, 0, 1, 2)], citations)
    assert out == "Rates rose.[1][2] Markets fell."


def test_spans_inserted_back_to_front_keep_offsets():
    text = "First claim. Second claim."
    citations = [web(1, "https://a.example"), web(2, "https://b.example")]
    out = insert_inline_citations(text, [support(12, 0), support(len(text), 1)], citations)
    assert out == "First claim.[1] Second claim. [2]"


def test_duplicate_span_is_inserted_once():
    text = "Fact one. More text"
    citations = [web(1, "https://a.example")]
    out = insert_inline_citations(text, [support(9, 0), support(9, 0)], citations)
    assert out == "Fact one.[1] More text"


def test_mapping_lookup_and_unknown_chunks_are_skipped():
    text = "Claim here."
    out = insert_inline_citations(text, [support(len(text), 5)], {0: web(1, "https://a.example")})
    assert out == text
    out = insert_inline_citations(text, [support(len(text), 3)], {3: web(4, "https://d.example")})
    assert out == "Claim here. [4]"


def test_strip_decimal_markers():
    assert strip_decimal_markers("Growth [1.1] was strong [1.1, 2.3].") == "Growth  was strong ."
    assert strip_decimal_markers("Keep [1] and [12]") == "Keep [1] and [12]"


def test_decimal_strip_shifts_support_offsets():
    raw = "Budget rose [1.1] sharply. Next."
    end = raw.index("sharply.") + len("sharply.")
    text, supports = strip_decimal_markers_with_supports(raw, [support(end, 0)])
    assert text == "Budget rose  sharply. Next."
    out = insert_inline_citations(text, supports, [web(1, "https://a.example")])
    assert out == "Budget rose  sharply.[1] Next."


def test_split_suggestions_extracts_at_most_three():
    raw = 'Here you go.\n\n---SUGGESTIONS---\n["One?", "Two?", "Three?", "Four?"]'
    content, suggestions = split_suggestions(raw)
    assert content == "Here you go."
    assert suggestions == ["One?", "Two?", "Three?"]


def test_split_suggestions_tolerates_bad_json():
    content, suggestions = split_suggestions("Answer\n---SUGGESTIONS---\n[not json]")
    assert content == "Answer"
    assert suggestions == []
    assert split_suggestions("No block here  ") == ("No block here", [])


def test_suggestions_filter_holds_back_partial_marker():
    stream = SuggestionsFilter()
    assert stream.feed("Hello ---SUGG") == "Hello "
    assert stream.feed('ESTIONS---\n["Next?"]') == ""
    assert stream.flush() == ""
    assert split_suggestions(stream.text) == ("Hello", ["Next?"])


def test_suggestions_filter_releases_false_alarm():
    stream = SuggestionsFilter()
    assert stream.feed("a -") == "a "
    assert stream.feed("- b") == "-- b"
    assert stream.flush() == ""


def test_collector_dedupes_by_url_and_tracks_grounding_index():
    collector = CitationCollector()
    grounding = GroundingMetadata(
        chunks=[
            GroundingChunk(uri="https://a.example", title="A"),
            GroundingChunk(uri="https://b.example", title="B"),
            GroundingChunk(uri="https://a.example", title="A again"),
        ]
    )
    added = collector.add_grounding(grounding)
    assert [c.index for c in added] == [1, 2]
    assert collector.by_grounding_index[2].index == 1
    assert collector.add_document("doc-1", "Guide", "snippet").index == 3
    assert collector.add_document("doc-1", "Guide") is None
    assert [c.source for c in collector.citations] == ["web", "web", "rag"]


def test_second_pass_does_not_duplicate_markers():
    citations = [web(1, "https://a.example")]
    end_text = "Paris is the capital of France."
    spans = [support(len(end_text), 0)]
    once = insert_inline_citations(end_text, spans, citations)
    assert insert_inline_citations(once, spans, citations) == once

    mid_word = "Hello world again"
    spans = [support(3, 0)]
    once = insert_inline_citations(mid_word, spans, citations)
    assert insert_inline_citations(once, spans, citations) == once
