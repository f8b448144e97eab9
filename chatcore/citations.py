import json
import re
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .schemas import Citation, GroundingMetadata, GroundingSupport

SUGGESTIONS_MARKER = "---SUGGESTIONS---"
_SUGGESTIONS_RE = re.compile(r"---SUGGESTIONS---\s*\n?\s*(\[[\s\S]*?\])")
# Bracketed decimals such as [1.1] or [1.1, 1.7] that the model emits instead of real markers.
_DECIMAL_MARKER_RE = re.compile(r"\[\d+\.\d+(?:,\s*\d+\.\d+)*\]")
_WORD_CHAR_RE = re.compile(r"[a-zA-Z0-9]")

CitationLookup = Union[Sequence[Citation], Mapping[int, Citation]]


def _lookup(citations: CitationLookup, chunk_index: int) -> Optional[Citation]:
    if isinstance(citations, Mapping):
        return citations.get(chunk_index)
    if 0 <= chunk_index < len(citations):
        return citations[chunk_index]
    return None


def _markers_for(support: GroundingSupport, citations: CitationLookup) -> str:
    indices = set()
    for chunk_index in support.chunk_indices:
        citation = _lookup(citations, chunk_index)
        if citation is not None:
            indices.add(citation.index)
    return "".join(f"[{i}]" for i in sorted(indices))


def insert_inline_citations(
    text: str, supports: Sequence[GroundingSupport], citations: CitationLookup
) -> str:
    """Insert ``[n]`` markers after each supported span.

    ``citations`` maps grounding chunk indices to citations, either as a list
    indexed by chunk position or as an explicit mapping. Spans are processed by
    end offset, last first, so earlier offsets stay valid while inserting.
    """
    if not text or not supports:
        return text
    usable = [s for s in supports if s.end_index is not None and s.chunk_indices and 0 <= s.end_index <= len(text)]
    usable.sort(key=lambda s: s.end_index, reverse=True)
    result = text
    for support in usable:
        markers = _markers_for(support, citations)
        if not markers:
            continue
        position = support.end_index
        while position < len(result) and _WORD_CHAR_RE.match(result[position]):
            position += 1
        if result.startswith(markers, position) or result.startswith(" " + markers, position):
            continue
        if position >= len(result):
            result = f"{result} {markers}"
        else:
            result = result[:position] + markers + result[position:]
    return result


def strip_decimal_markers(text: str) -> str:
    return _DECIMAL_MARKER_RE.sub("", text)


def strip_decimal_markers_with_supports(
    text: str, supports: Sequence[GroundingSupport]
) -> Tuple[str, List[GroundingSupport]]:
    """Strip decimal artifacts and shift support end offsets to the cleaned text."""
    removed = [(m.start(), m.end()) for m in _DECIMAL_MARKER_RE.finditer(text)]
    if not removed:
        return text, list(supports)
    shifted: List[GroundingSupport] = []
    for support in supports:
        if support.end_index is None:
            shifted.append(support)
            continue
        delta = sum(min(end, support.end_index) - start for start, end in removed if start < support.end_index)
        shifted.append(support.model_copy(update={"end_index": support.end_index - delta}))
    return _DECIMAL_MARKER_RE.sub("", text), shifted


def split_suggestions(text: str) -> Tuple[str, List[str]]:
    """Split the trailing suggestions block off a model response."""
    marker_at = text.find(SUGGESTIONS_MARKER)
    if marker_at == -1:
        return text.rstrip(), []
    content = text[:marker_at].rstrip()
    match = _SUGGESTIONS_RE.search(text, marker_at)
    if not match:
        return content, []
    try:
        parsed = json.loads(match.group(1))
    except json.JSONDecodeError:
        return content, []
    if not isinstance(parsed, list):
        return content, []
    return content, [str(s).strip() for s in parsed if isinstance(s, str) and s.strip()][:3]


class SuggestionsFilter:
    """Incremental filter that holds back the suggestions block while streaming."""

    def __init__(self) -> None:
        self.text = ""
        self._emitted = 0

    def _safe_end(self) -> int:
        marker_at = self.text.find(SUGGESTIONS_MARKER)
        if marker_at != -1:
            return marker_at
        # Hold back a tail that could be the start of the marker.
        for size in range(min(len(SUGGESTIONS_MARKER) - 1, len(self.text)), 0, -1):
            if SUGGESTIONS_MARKER.startswith(self.text[-size:]):
                return len(self.text) - size
        return len(self.text)

    def feed(self, delta: str) -> str:
        self.text += delta
        end = self._safe_end()
        if end <= self._emitted:
            return ""
        out = self.text[self._emitted:end]
        self._emitted = end
        return out

    def flush(self) -> str:
        if SUGGESTIONS_MARKER in self.text:
            return ""
        out = self.text[self._emitted:]
        self._emitted = len(self.text)
        return out


class CitationCollector:
    """Citations of a single response: 1-based, stream ordered, unique by url."""

    def __init__(self) -> None:
        self.citations: List[Citation] = []
        self.by_grounding_index: Dict[int, Citation] = {}
        self._by_url: Dict[str, Citation] = {}

    def _add(self, url: str, title: str, source: str, snippet: Optional[str]) -> Tuple[Citation, bool]:
        existing = self._by_url.get(url)
        if existing is not None:
            return existing, False
        citation = Citation(index=len(self.citations) + 1, title=title, url=url, source=source, snippet=snippet)
        self.citations.append(citation)
        self._by_url[url] = citation
        return citation, True

    def add_web(self, uri: str, title: str = "", grounding_index: Optional[int] = None) -> Optional[Citation]:
        citation, created = self._add(uri, title or uri, "web", None)
        if grounding_index is not None:
            self.by_grounding_index[grounding_index] = citation
        return citation if created else None

    def add_document(self, document_id: str, title: str = "", snippet: Optional[str] = None) -> Optional[Citation]:
        citation, created = self._add(document_id, title or document_id, "rag", snippet)
        return citation if created else None

    def add_grounding(self, grounding: GroundingMetadata) -> List[Citation]:
        """Register every web chunk; returns only the newly created citations."""
        added: List[Citation] = []
        for i, chunk in enumerate(grounding.chunks):
            if not chunk.uri:
                continue
            citation = self.add_web(chunk.uri, chunk.title, grounding_index=i)
            if citation is not None:
                added.append(citation)
        return added
