import re
from typing import List, Optional, Tuple

from .schemas import MemoryDetection, SuggestedMemory

_RECALL_PATTERNS = [
    re.compile(r"\bdo you remember\s+(?:when\s+|what\s+|that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bremember when\s+(.+)", re.IGNORECASE),
    re.compile(
        r"\bwhat (?:did|have) (?:we|i) (?:say|said|discuss|discussed|decide|decided|talk about|talked about|agree|agreed)"
        r"(?:\s+(?:on|about|regarding))?\s*(.*)",
        re.IGNORECASE,
    ),
    re.compile(r"\bdid (?:we|i) (?:discuss|talk about|mention|decide)\s+(.+)", re.IGNORECASE),
    re.compile(r"\blast time we (?:talked|spoke|discussed)(?:\s+about)?\s*(.*)", re.IGNORECASE),
    re.compile(r"\bwhat do you (?:remember|know) about\s+(.+)", re.IGNORECASE),
    re.compile(r"\b(?:recall|remind me) what\s+(.+)", re.IGNORECASE),
]

_STORE_PATTERNS: List[Tuple[re.Pattern, str, str]] = [
    (re.compile(r"\b(?:we(?:'ve| have)? decided|decided to|let'?s go with|we'?ll go with|final decision)\b", re.I), "decision", "high"),
    (re.compile(r"\b(?:prefers?|preference|always use|never use|(?:doesn'?t|don'?t) like|likes to)\b", re.I), "preference", "high"),
    (re.compile(r"\b(?:remind me to|to-?do|deadline|due (?:by|on)|follow up (?:on|with)|need to .+ by)\b", re.I), "task", "medium"),
]
_EXPLICIT_REMEMBER_RE = re.compile(r"\b(?:remember|note|keep in mind)\s+(?:that\s+)?(.+)", re.IGNORECASE)
_PREFERENCE_STATEMENT_RE = re.compile(r"(.+?\s+prefers?\s+.+?)(?:\.|$)", re.IGNORECASE)
_PLEASE_RE = re.compile(r"\s*please\s*", re.IGNORECASE)
_TRAILING_PUNCT = " ?!.,"


def detect_recall(message: str) -> Optional[str]:
    """Return the memory search query if the message asks about a past conversation."""
    for pattern in _RECALL_PATTERNS:
        match = pattern.search(message)
        if match:
            topic = match.group(1).strip(_TRAILING_PUNCT)
            return topic or message.strip(_TRAILING_PUNCT)
    return None


def recall_query(message: str) -> str:
    return detect_recall(message) or message.strip(_TRAILING_PUNCT)


def should_store_memory(message: str, response: str = "") -> MemoryDetection:
    """Detect a decision, preference or task worth surfacing as a suggested memory."""
    if detect_recall(message):
        return MemoryDetection()
    for pattern, memory_type, importance in _STORE_PATTERNS:
        if pattern.search(message):
            return MemoryDetection(should=True, type=memory_type, importance=importance)
    if _EXPLICIT_REMEMBER_RE.search(message):
        return MemoryDetection(should=True, type="decision", importance="high")
    return MemoryDetection()


def extract_memory_content(message: str, response: str) -> str:
    match = _EXPLICIT_REMEMBER_RE.search(message)
    if match:
        return _PLEASE_RE.sub(" ", match.group(1)).strip()
    match = _PREFERENCE_STATEMENT_RE.search(message)
    if match:
        return match.group(1).strip()
    tail = "..." if len(response) > 200 else ""
    return f"{message} → {response[:200]}{tail}"


def build_suggested_memory(
    detection: MemoryDetection, message: str, response: str, topic: str
) -> Optional[SuggestedMemory]:
    if not detection.should or detection.type is None:
        return None
    return SuggestedMemory(
        content=extract_memory_content(message, response),
        type=detection.type,
        importance=detection.importance or "medium",
        topic=topic,
    )


def crossed_summary_threshold(count_before: int, count_after: int, interval: int) -> bool:
    if interval <= 0 or count_after <= count_before:
        return False
    return count_before // interval < count_after // interval
